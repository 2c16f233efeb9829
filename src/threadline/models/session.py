"""Session record and its lifecycle state machine."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from ulid import ULID


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"thr"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class SessionStatus(StrEnum):
    """
    Lifecycle state of a session.

    ``ACTIVE`` is the initial state.  ``EXPIRED`` rejects writes but still
    serves reads.  ``CLOSED`` is terminal.  No state ever returns to
    ``ACTIVE`` once it has left it.
    """

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"

    def can_transition_to(self, target: SessionStatus) -> bool:
        """Return True if the state machine permits ``self -> target``."""
        return target in _TRANSITIONS[self]

    @property
    def accepts_writes(self) -> bool:
        return self is SessionStatus.ACTIVE


# Self-loops are listed so that idempotent close/expire calls are legal.
_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.EXPIRED, SessionStatus.CLOSED}
    ),
    SessionStatus.EXPIRED: frozenset({SessionStatus.EXPIRED, SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset({SessionStatus.CLOSED}),
}


class Session:
    """Thin data class for session rows (not Pydantic, rows are read in bulk)."""

    __slots__ = (
        "closed_at",
        "created_at",
        "credential_id",
        "expired_at",
        "id",
        "last_message_at",
        "message_count",
        "metadata",
        "status",
        "topic",
    )

    def __init__(
        self,
        id: str,
        credential_id: str,
        status: SessionStatus,
        created_at: int,
        last_message_at: int | None = None,
        message_count: int = 0,
        topic: str | None = None,
        metadata: dict[str, Any] | None = None,
        expired_at: int | None = None,
        closed_at: int | None = None,
    ) -> None:
        self.id = id
        self.credential_id = credential_id
        self.status = status
        self.created_at = created_at
        self.last_message_at = last_message_at
        self.message_count = message_count
        self.topic = topic
        self.metadata = metadata
        self.expired_at = expired_at
        self.closed_at = closed_at

    @property
    def last_activity(self) -> int:
        """Unix ms of the last append, or of creation when no message exists yet."""
        return self.last_message_at if self.last_message_at is not None else self.created_at

    def is_idle(self, now_ms: int, timeout_ms: int) -> bool:
        """True if the inactivity threshold has strictly passed at ``now_ms``."""
        return now_ms - self.last_activity > timeout_ms

    def __repr__(self) -> str:
        return (
            f"Session(id={self.id!r}, status={self.status.value}, "
            f"message_count={self.message_count})"
        )
