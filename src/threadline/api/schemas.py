"""Request and response bodies of the HTTP API (camelCase on the wire)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from threadline.models.message import USER_MESSAGE_MAX_CHARS, Message
from threadline.models.session import Session


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Requests ────────────────────────────────────────────────────────────────────


class CreateThreadRequest(_Wire):
    message: str | None = Field(default=None, min_length=1, max_length=USER_MESSAGE_MAX_CHARS)


class SendMessageRequest(_Wire):
    message: str = Field(min_length=1, max_length=USER_MESSAGE_MAX_CHARS)


# ── Responses ───────────────────────────────────────────────────────────────────


class CreateThreadResponse(_Wire):
    id: str
    created_at: int


class SuccessResponse(_Wire):
    success: bool = True


class ThreadResponse(_Wire):
    id: str
    topic: str | None = None
    status: str
    created_at: int
    last_message_at: int | None = None
    message_count: int | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_session(cls, session: Session) -> ThreadResponse:
        return cls(
            id=session.id,
            topic=session.topic,
            status=session.status.value,
            created_at=session.created_at,
            last_message_at=session.last_message_at,
            message_count=session.message_count,
            metadata=session.metadata,
        )


class MessageResponse(_Wire):
    id: int
    type: str
    content: str
    created_at: int
    tool_call_id: str | None = None
    metadata: dict[str, Any] | None = None

    @classmethod
    def from_message(cls, message: Message) -> MessageResponse:
        return cls(
            id=message.id,
            type=message.type,
            content=message.content,
            created_at=message.created_at,
            tool_call_id=message.tool_call_id,
            metadata=message.metadata,
        )


class ErrorBody(BaseModel):
    code: str
    message: str
    reset_at: int | None = Field(default=None, serialization_alias="resetAt")


class ErrorResponse(BaseModel):
    error: ErrorBody
