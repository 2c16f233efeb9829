"""Message models and draft validation."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from threadline.errors import ValidationError

MessageType = Literal["user", "assistant", "tool", "system"]
"""Closed set of message types."""

MESSAGE_TYPES: frozenset[str] = frozenset({"user", "assistant", "tool", "system"})

Order = Literal["asc", "desc"]

USER_MESSAGE_MAX_CHARS = 4000


class Message(BaseModel):
    """
    A single message stored in the MessageLog.

    Messages are append-only: once the append transaction commits, no field
    ever changes.
    """

    id: int
    """Per-session sequence number, starting at 1. Also the pagination cursor."""
    session_id: str
    type: MessageType
    content: str
    created_at: int
    """Unix millisecond timestamp, non-decreasing within a session."""
    tool_call_id: str | None = None
    """Present only when ``type == "tool"``."""
    metadata: dict[str, Any] | None = None


class MessageDraft(BaseModel):
    """
    A message that has not been appended yet.

    ``type`` is a plain string here so that unknown types reach
    :meth:`validate_for_append` and are reported as a ``ValidationError``
    instead of a pydantic error.
    """

    type: str
    content: str
    tool_call_id: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def user(cls, content: str, metadata: dict[str, Any] | None = None) -> MessageDraft:
        return cls(type="user", content=content, metadata=metadata)

    def validate_for_append(self, max_user_chars: int = USER_MESSAGE_MAX_CHARS) -> None:
        """
        Check the draft against the message rules.

        Raises:
            ValidationError: Unknown type, oversize user content, or a
                ``tool_call_id`` that is missing on a tool message or present
                on any other type.
        """
        if self.type not in MESSAGE_TYPES:
            raise ValidationError(
                f"Unknown message type {self.type!r}; expected one of {sorted(MESSAGE_TYPES)}"
            )
        if self.type == "user" and len(self.content) > max_user_chars:
            raise ValidationError(
                f"User message is {len(self.content)} characters; the limit is {max_user_chars}"
            )
        if self.type == "tool" and not self.tool_call_id:
            raise ValidationError("Tool messages require a tool_call_id")
        if self.type != "tool" and self.tool_call_id is not None:
            raise ValidationError("tool_call_id is only allowed on tool messages")

