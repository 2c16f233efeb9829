"""Connection handling and write transactions shared by the SQLite stores."""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from threadline.errors import InternalError, StoreNotInitializedError
from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import StoreConfig
from threadline.models.session import Session, SessionStatus
from threadline.store.pool import StorePool

Clock = Callable[[], float]
"""Returns the current time in unix seconds (``time.time`` by default)."""

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"


class Transaction:
    """Handle for an open write transaction; events are published after commit."""

    __slots__ = ("conn", "events")

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.events: list[tuple[ThreadlineEvent, dict[str, Any]]] = []

    def publish_after_commit(self, event: ThreadlineEvent, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))


class SQLiteStore:
    """
    Base class for stores that share a ``StorePool``.

    When no pool is supplied the store creates a private one and closes it in
    ``release()``.  When a pool is supplied, ``release()`` leaves the connections
    open; the pool owns their lifetime.
    """

    logger_name = "threadline.store"

    def __init__(
        self,
        config: StoreConfig,
        pool: StorePool | None = None,
        *,
        event_bus: EventBus | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._owns_pool = pool is None
        self._pool = pool or StorePool()
        self._event_bus = event_bus or EventBus()
        self._clock = clock
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._logger = structlog.get_logger(self.logger_name)

    async def initialize(self) -> None:
        """
        Borrow the pooled connections and apply the schema.

        The schema uses ``CREATE ... IF NOT EXISTS`` so calling this from
        several stores on the same path is safe.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        writer, reader = await self._pool.acquire(
            self._db_path,
            wal_mode=self._config.wal_mode,
            connection_timeout=self._config.connection_timeout,
        )
        async with self._pool.write_lock(self._db_path):
            # executescript() handles multiple statements, comments, and semicolons correctly
            await writer.executescript(_SCHEMA_PATH.read_text())
            await writer.commit()
        self._writer = writer
        self._reader = reader
        self._logger.info("store_initialized", db_path=self._db_path)

    async def release(self) -> None:
        """Release the connections; closes them only if this store owns its pool."""
        if self._writer is None:
            return
        self._writer = None
        self._reader = None
        if self._owns_pool:
            await self._pool.close_all()

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _reader_or_raise(self) -> aiosqlite.Connection:
        if self._reader is None:
            raise StoreNotInitializedError()
        return self._reader

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[Transaction]:
        """
        Run a write transaction under the pool's write lock.

        Commits when the block exits normally.  Any exception (including
        cancellation) rolls back, so no partial write survives.  Driver errors
        surface as :class:`InternalError`; domain errors propagate unchanged.
        Events queued on the transaction are published only after commit.
        """
        if self._writer is None:
            raise StoreNotInitializedError()
        txn = Transaction(self._writer)
        async with self._pool.write_lock(self._db_path):
            try:
                yield txn
                await txn.conn.commit()
            except aiosqlite.Error as exc:
                await txn.conn.rollback()
                self._logger.error("write_transaction_failed", error=str(exc))
                raise InternalError(f"Write transaction failed: {exc}") from exc
            except BaseException:
                await txn.conn.rollback()
                raise
        for event, payload in txn.events:
            self._event_bus.publish(event, payload)

    # ── Session rows ───────────────────────────────────────────────────────────

    @staticmethod
    async def _fetch_session(conn: aiosqlite.Connection, session_id: str) -> Session | None:
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        return None if row is None else row_to_session(row)

    async def _expire(self, txn: Transaction, session: Session, now_ms: int) -> bool:
        """
        Move an idle ACTIVE session to EXPIRED inside ``txn``.

        The UPDATE is conditional on the row still being ACTIVE, so when the
        sweeper, a reader and a writer race to expire the same session exactly
        one of them applies the transition and publishes the event.  ``session``
        is updated in place either way; the return value says whether this
        call applied the transition.
        """
        if not session.status.can_transition_to(SessionStatus.EXPIRED):
            return False
        cursor = await txn.conn.execute(
            "UPDATE sessions SET status = 'EXPIRED', expired_at = ?"
            " WHERE id = ? AND status = 'ACTIVE'",
            (now_ms, session.id),
        )
        if cursor.rowcount == 1:
            self._logger.info(
                "session_expired",
                session_id=session.id,
                last_activity=session.last_activity,
            )
            txn.publish_after_commit(
                ThreadlineEvent.SESSION_EXPIRED,
                {"session_id": session.id, "last_activity": session.last_activity},
            )
            session.status = SessionStatus.EXPIRED
            session.expired_at = now_ms
            return True
        # Lost the race: the row is no longer ACTIVE
        latest = await self._fetch_session(txn.conn, session.id)
        if latest is not None:
            session.status = latest.status
            session.expired_at = latest.expired_at
            session.closed_at = latest.closed_at
        return False


def row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        id=row["id"],
        credential_id=row["credential_id"],
        status=SessionStatus(row["status"]),
        created_at=row["created_at"],
        last_message_at=row["last_message_at"],
        message_count=row["message_count"],
        topic=row["topic"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else None,
        expired_at=row["expired_at"],
        closed_at=row["closed_at"],
    )
