"""Session records and their lifecycle (ACTIVE → EXPIRED / CLOSED)."""

from __future__ import annotations

import json
import time
from typing import Any

from threadline.errors import (
    SessionNotActiveError,
    SessionNotFoundError,
    ValidationError,
)
from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import SessionConfig, StoreConfig
from threadline.models.session import Session, SessionStatus, make_id
from threadline.store.base import Clock, SQLiteStore, row_to_session
from threadline.store.pool import StorePool


class SessionStore(SQLiteStore):
    """
    Owns session rows and applies the session state machine.

    Expiry is evaluated both lazily (every ``get()``) and by the periodic
    ``expire_idle()`` sweep.  Whichever path observes an idle ACTIVE session
    first applies the transition; once the threshold has passed no caller
    ever receives a stale ``ACTIVE`` status.

    Usage::

        store = SessionStore(StoreConfig(), SessionConfig())
        await store.initialize()
        try:
            session = await store.create("cred_123")
            session = await store.get(session.id)
        finally:
            await store.release()
    """

    logger_name = "threadline.store.sessions"

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

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def create(
        self,
        credential_id: str,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """
        Insert a new ACTIVE session owned by ``credential_id``.

        The initial message, if any, is appended by the caller through
        :meth:`MessageLog.append` so that it goes through the same ordering
        and counting path as every other message.

        Returns:
            The created Session with ``message_count == 0``.
        """
        session = Session(
            id=make_id("thr"),
            credential_id=credential_id,
            status=SessionStatus.ACTIVE,
            created_at=self._now_ms(),
            metadata=metadata,
        )
        async with self._transaction() as txn:
            await txn.conn.execute(
                """
                INSERT INTO sessions (id, credential_id, status, created_at, message_count, metadata)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (
                    session.id,
                    credential_id,
                    session.status.value,
                    session.created_at,
                    json.dumps(metadata) if metadata else None,
                ),
            )
            txn.publish_after_commit(
                ThreadlineEvent.SESSION_CREATED,
                {"session_id": session.id, "credential_id": credential_id},
            )
        self._logger.info("session_created", session_id=session.id, credential_id=credential_id)
        return session

    async def get(self, session_id: str) -> Session:
        """
        Fetch a session, applying the lazy expiry check first.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        session = await self._fetch_session(self._reader_or_raise(), session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not self._is_expirable(session):
            return session

        async with self._transaction() as txn:
            # Re-read under the write lock; another path may have moved it already
            current = await self._fetch_session(txn.conn, session_id)
            if current is None:
                raise SessionNotFoundError(session_id)
            if self._is_expirable(current):
                await self._expire(txn, current, self._now_ms())
        return current

    async def touch(self, session_id: str, at: int | None = None) -> Session:
        """
        Refresh the inactivity clock of an ACTIVE session.

        ``last_message_at`` only moves forward: it becomes
        ``max(current, at or now)``.

        Raises:
            SessionNotFoundError: If the session does not exist.
            SessionNotActiveError: If the session is EXPIRED or CLOSED
                (including one that expires during this call).
        """
        async with self._transaction() as txn:
            session = await self._fetch_session(txn.conn, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            now_ms = self._now_ms()
            if self._is_expirable(session, now_ms):
                # Commit the expiry; the error is raised once the block exits
                await self._expire(txn, session, now_ms)
            elif session.status.accepts_writes:
                stamp = max(at if at is not None else now_ms, session.last_message_at or 0)
                await txn.conn.execute(
                    "UPDATE sessions SET last_message_at = ? WHERE id = ?",
                    (stamp, session_id),
                )
                session.last_message_at = stamp
        if not session.status.accepts_writes:
            raise SessionNotActiveError(session_id, session.status)
        return session

    async def close(self, session_id: str) -> Session:
        """
        Force a session to CLOSED. Idempotent.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        async with self._transaction() as txn:
            session = await self._fetch_session(txn.conn, session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status is SessionStatus.CLOSED:
                return session
            now_ms = self._now_ms()
            await txn.conn.execute(
                "UPDATE sessions SET status = 'CLOSED', closed_at = ? WHERE id = ?",
                (now_ms, session_id),
            )
            session.status = SessionStatus.CLOSED
            session.closed_at = now_ms
            txn.publish_after_commit(ThreadlineEvent.SESSION_CLOSED, {"session_id": session_id})
        self._logger.info("session_closed", session_id=session_id)
        return session

    async def set_topic(self, session_id: str, topic: str) -> bool:
        """
        Assign the session topic if it has none yet.

        Returns:
            True if this call set the topic, False if one was already present.

        Raises:
            ValidationError: If ``topic`` is blank.
            SessionNotFoundError: If the session does not exist.
        """
        topic = topic.strip()
        if not topic:
            raise ValidationError("Topic must not be blank")
        async with self._transaction() as txn:
            cursor = await txn.conn.execute(
                "UPDATE sessions SET topic = ? WHERE id = ? AND topic IS NULL",
                (topic, session_id),
            )
            if cursor.rowcount == 0:
                if await self._fetch_session(txn.conn, session_id) is None:
                    raise SessionNotFoundError(session_id)
                return False
            txn.publish_after_commit(
                ThreadlineEvent.TOPIC_ASSIGNED, {"session_id": session_id, "topic": topic}
            )
        return True

    # ── Sweep and queries ──────────────────────────────────────────────────────

    async def expire_idle(self) -> list[str]:
        """
        Expire every ACTIVE session whose inactivity threshold has passed.

        Returns:
            IDs of the sessions this sweep transitioned (sessions already
            expired by a concurrent reader are not included).
        """
        now_ms = self._now_ms()
        cutoff = now_ms - self._session_config.inactivity_timeout_ms
        expired: list[str] = []
        async with self._transaction() as txn:
            async with txn.conn.execute(
                "SELECT * FROM sessions"
                " WHERE status = 'ACTIVE' AND COALESCE(last_message_at, created_at) < ?",
                (cutoff,),
            ) as cursor:
                rows = await cursor.fetchall()
            for row in rows:
                session = row_to_session(row)
                if await self._expire(txn, session, now_ms):
                    expired.append(session.id)
        if expired:
            self._logger.info("sweep_expired_sessions", count=len(expired))
        return expired

    async def count_active(self, credential_id: str) -> int:
        """Number of ACTIVE sessions owned by the credential that are not yet idle."""
        cutoff = self._now_ms() - self._session_config.inactivity_timeout_ms
        async with self._reader_or_raise().execute(
            "SELECT COUNT(*) FROM sessions"
            " WHERE credential_id = ? AND status = 'ACTIVE'"
            " AND COALESCE(last_message_at, created_at) >= ?",
            (credential_id, cutoff),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    async def list_sessions(
        self,
        credential_id: str,
        *,
        status: SessionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Session]:
        """
        List a credential's sessions, newest first.

        The status shown is the stored one; call :meth:`get` for the
        expiry-checked view of a single session.
        """
        conditions = ["credential_id = ?"]
        params: list[Any] = [credential_id]
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        params.extend([limit, offset])
        async with self._reader_or_raise().execute(
            f"SELECT * FROM sessions WHERE {' AND '.join(conditions)}"
            " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            params,
        ) as cursor:
            rows = await cursor.fetchall()
        return [row_to_session(r) for r in rows]

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _is_expirable(self, session: Session, now_ms: int | None = None) -> bool:
        if session.status is not SessionStatus.ACTIVE:
            return False
        now = self._now_ms() if now_ms is None else now_ms
        return session.is_idle(now, self._session_config.inactivity_timeout_ms)
