"""Typed payload definitions for each ThreadlineEvent.

Usage example::

    from threadline.events.bus import EventBus, ThreadlineEvent
    from threadline.events.payloads import MessageAppendedPayload

    def on_message(event: ThreadlineEvent, payload: MessageAppendedPayload) -> None:
        print(f"{payload['session_id']}#{payload['message_id']} ({payload['type']})")

    bus.subscribe(ThreadlineEvent.MESSAGE_APPENDED, on_message)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.SESSION_CREATED`."""

    session_id: str
    credential_id: str


class SessionExpiredPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.SESSION_EXPIRED`."""

    session_id: str
    last_activity: int
    """Unix ms of the last append (or creation) that the threshold was measured from."""


class SessionClosedPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.SESSION_CLOSED`."""

    session_id: str


class TopicAssignedPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.TOPIC_ASSIGNED`."""

    session_id: str
    topic: str


# ── Messages ──────────────────────────────────────────────────────────────────


class MessageAppendedPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.MESSAGE_APPENDED`."""

    session_id: str
    message_id: int
    type: str


# ── Throttling and responder ──────────────────────────────────────────────────


class RateLimitedPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.RATE_LIMITED`."""

    credential_id: str
    window: str
    reset_at: int


class ResponderFailedPayload(TypedDict):
    """Payload for :attr:`ThreadlineEvent.RESPONDER_FAILED`."""

    session_id: str
    error: str
