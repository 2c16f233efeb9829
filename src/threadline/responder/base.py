"""The agent responder boundary: what Threadline hands out and what comes back."""

from __future__ import annotations

import asyncio
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel

from threadline.models.message import Message, MessageDraft


class Reply(BaseModel):
    """A message produced by the agent responder, appended back to the session."""

    type: Literal["assistant", "tool", "system"] = "assistant"
    content: str
    tool_call_id: str | None = None
    metadata: dict[str, Any] | None = None

    def to_draft(self) -> MessageDraft:
        return MessageDraft(
            type=self.type,
            content=self.content,
            tool_call_id=self.tool_call_id,
            metadata=self.metadata,
        )


@runtime_checkable
class AgentResponder(Protocol):
    """
    External capability that produces replies for a session.

    ``respond`` receives the conversation so far (oldest first, the
    triggering user message last) and yields zero or more replies.  Each
    reply is appended to the session as soon as it is yielded, so readers
    can see partial progress of a multi-message answer.
    """

    def respond(self, session_id: str, conversation: Sequence[Message]) -> AsyncIterator[Reply]:
        ...


class EchoResponder:
    """
    Deterministic responder for local runs and tests.

    Replies with one assistant message quoting the latest user message.
    """

    def __init__(self, prefix: str = "Echo: ", delay: float = 0.0) -> None:
        self._prefix = prefix
        self._delay = delay

    async def respond(
        self, session_id: str, conversation: Sequence[Message]
    ) -> AsyncIterator[Reply]:
        last_user = next((m for m in reversed(conversation) if m.type == "user"), None)
        if last_user is None:
            return
        if self._delay:
            await asyncio.sleep(self._delay)
        yield Reply(
            content=f"{self._prefix}{last_user.content}",
            metadata={"in_reply_to": last_user.id},
        )


_WORD = re.compile(r"[^\W_][\w'\-]*", re.UNICODE)


def derive_topic(content: str, max_words: int = 6, max_chars: int = 80) -> str | None:
    """
    Derive a short topic label from message text.

    Takes the first ``max_words`` words, ignoring punctuation, and caps the
    result at ``max_chars``.  Returns None when the text has no words.
    """
    words = _WORD.findall(content)[:max_words]
    if not words:
        return None
    topic = " ".join(words)
    if len(topic) > max_chars:
        topic = topic[:max_chars].rstrip()
    return topic
