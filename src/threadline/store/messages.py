"""Append-only, per-session ordered message log with cursor pagination."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator
from typing import Any

import aiosqlite

from threadline.errors import (
    MessageNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    ValidationError,
)
from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import SessionConfig, StoreConfig
from threadline.models.message import Message, MessageDraft, Order
from threadline.models.session import Session
from threadline.store.base import Clock, SQLiteStore, Transaction
from threadline.store.pool import StorePool

_ORDERS: frozenset[str] = frozenset({"asc", "desc"})


class MessageLog(SQLiteStore):
    """
    Append-only, SQLite-backed message log.

    Ordering guarantees:

    - ``id`` is the per-session sequence ``message_count + 1``, assigned
      inside the append transaction.  Write transactions are serialised by the
      pool write lock, so ids are gap-free, never reused, and their order is
      the append order.
    - ``created_at`` never decreases within a session.  When the clock reads
      earlier than the previous message, the previous value plus
      ``clock_epsilon_ms`` is used.
    - Reads go through the pool's reader connection and only ever see
      committed messages.

    Cursors are plain message ids, so pages stay stable while new messages
    are appended at the tail.

    Usage::

        log = MessageLog(StoreConfig(), SessionConfig(), pool=pool)
        await log.initialize()
        msg = await log.append(session_id, MessageDraft.user("hello"))
        page = await log.range(session_id, limit=10, after=msg.id - 1)
    """

    logger_name = "threadline.store.messages"

    def __init__(
        self,
        config: StoreConfig,
        session_config: SessionConfig | None = None,
        pool: StorePool | None = None,
        *,
        event_bus: EventBus | None = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(config, pool, event_bus=event_bus, clock=clock)
        self._session_config = session_config or SessionConfig()

    # ── Append ─────────────────────────────────────────────────────────────────

    async def append(self, session_id: str, draft: MessageDraft) -> Message:
        """
        Append a message to a session's log.

        The message row, the session's ``message_count`` and its
        ``last_message_at`` are written in one transaction: either all of
        them commit or none does.

        Args:
            session_id: The owning session.
            draft: Type, content and optional tool call id / metadata.

        Returns:
            The stored message with its assigned ``id`` and ``created_at``.

        Raises:
            ValidationError: Unknown type, oversize user content, or a
                misplaced ``tool_call_id``. Checked before any write.
            SessionNotFoundError: If the session does not exist.
            SessionNotActiveError: If the session is EXPIRED or CLOSED, or
                its inactivity threshold has passed (the expiry is applied).
            InternalError: If the database write fails.
        """
        draft.validate_for_append(self._session_config.max_user_message_chars)

        message: Message | None = None
        async with self._transaction() as txn:
            session = await self._fetch_session(txn.conn, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            now_ms = self._now_ms()
            if session.status.accepts_writes and session.is_idle(
                now_ms, self._session_config.inactivity_timeout_ms
            ):
                # Commit the expiry; the error is raised once the block exits
                await self._expire(txn, session, now_ms)
            elif session.status.accepts_writes:
                message = await self._insert(txn, session, draft, now_ms)

        if message is None:
            raise SessionNotActiveError(session_id, session.status)

        self._logger.debug(
            "message_appended",
            session_id=session_id,
            message_id=message.id,
            type=message.type,
        )
        return message

    async def _insert(
        self,
        txn: Transaction,
        session: Session,
        draft: MessageDraft,
        now_ms: int,
    ) -> Message:
        async with txn.conn.execute(
            "SELECT created_at FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT 1",
            (session.id,),
        ) as cursor:
            row = await cursor.fetchone()
        created_at = now_ms
        if row is not None and now_ms < row[0]:
            # Clock moved backwards; keep created_at monotonic
            created_at = row[0] + self._session_config.clock_epsilon_ms

        message = Message(
            id=session.message_count + 1,
            session_id=session.id,
            type=draft.type,  # type: ignore[arg-type]
            content=draft.content,
            created_at=created_at,
            tool_call_id=draft.tool_call_id,
            metadata=draft.metadata,
        )
        await txn.conn.execute(
            """
            INSERT INTO messages (session_id, id, type, content, created_at, tool_call_id, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.session_id,
                message.id,
                message.type,
                message.content,
                message.created_at,
                message.tool_call_id,
                json.dumps(message.metadata) if message.metadata else None,
            ),
        )
        await txn.conn.execute(
            """
            UPDATE sessions
            SET message_count = ?, last_message_at = MAX(COALESCE(last_message_at, 0), ?)
            WHERE id = ?
            """,
            (message.id, message.created_at, session.id),
        )
        txn.publish_after_commit(
            ThreadlineEvent.MESSAGE_APPENDED,
            {"session_id": session.id, "message_id": message.id, "type": message.type},
        )
        return message

    # ── Reads ──────────────────────────────────────────────────────────────────

    async def range(
        self,
        session_id: str,
        *,
        limit: int | None = None,
        order: Order | str = "asc",
        after: int | None = None,
        before: int | None = None,
    ) -> list[Message]:
        """
        Read one page of a session's messages.

        ``after=X`` pages forward from X (ids ``> X``), ``before=X`` pages
        backward from X (ids ``< X``); when both are given ``after`` wins.
        Without a cursor the page starts at the head (``asc``) or the tail
        (``desc``) of the log.  The page is then presented in ``order``.

        A page shorter than ``limit`` means no more data in that direction.
        An unknown session simply has no messages; callers that need
        ``SessionNotFoundError`` check the session first.

        Args:
            session_id: The session to read.
            limit: Page size in ``[1, max_page_size]``; defaults to
                ``default_page_size``.
            order: ``"asc"`` or ``"desc"``.
            after: Exclusive lower cursor (message id).
            before: Exclusive upper cursor (message id).

        Raises:
            ValidationError: If ``limit``, ``order`` or a cursor is invalid.
        """
        page_size = self._validate_limit(limit)
        if order not in _ORDERS:
            raise ValidationError(f"order must be 'asc' or 'desc', got {order!r}")
        for name, cursor_value in (("after", after), ("before", before)):
            if cursor_value is not None and (
                isinstance(cursor_value, bool) or not isinstance(cursor_value, int)
            ):
                raise ValidationError(f"{name} must be a message id (integer)")

        params: list[Any] = [session_id]
        if after is not None:
            bound, scan = "AND id > ?", "ASC"
            params.append(after)
        elif before is not None:
            bound, scan = "AND id < ?", "DESC"
            params.append(before)
        else:
            bound, scan = "", "ASC" if order == "asc" else "DESC"
        params.append(page_size)

        async with self._reader_or_raise().execute(
            f"SELECT * FROM messages WHERE session_id = ? {bound} ORDER BY id {scan} LIMIT ?",
            params,
        ) as cursor:
            rows = await cursor.fetchall()

        messages = [_row_to_message(r) for r in rows]
        if scan.lower() != order:
            messages.reverse()
        return messages

    async def iter_messages(
        self,
        session_id: str,
        *,
        order: Order = "asc",
        page_size: int | None = None,
    ) -> AsyncIterator[Message]:
        """
        Lazily walk a session's entire log, one page at a time.

        Uses id cursors, so messages appended during the walk are picked up
        at the tail (``asc``) and nothing is repeated or skipped.
        """
        size = page_size or self._session_config.max_page_size
        cursor: int | None = None
        while True:
            if order == "asc":
                page = await self.range(session_id, limit=size, order="asc", after=cursor)
            else:
                page = await self.range(session_id, limit=size, order="desc", before=cursor)
            for message in page:
                yield message
            if len(page) < size:
                return
            cursor = page[-1].id

    async def get(self, session_id: str, message_id: int) -> Message:
        """
        Fetch a single message.

        Raises:
            MessageNotFoundError: If the session has no message with this id.
        """
        async with self._reader_or_raise().execute(
            "SELECT * FROM messages WHERE session_id = ? AND id = ?",
            (session_id, message_id),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(session_id, message_id)
        return _row_to_message(row)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _validate_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._session_config.default_page_size
        maximum = self._session_config.max_page_size
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= maximum:
            raise ValidationError(f"limit must be an integer between 1 and {maximum}, got {limit!r}")
        return limit


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        type=row["type"],
        content=row["content"],
        created_at=row["created_at"],
        tool_call_id=row["tool_call_id"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
    )
