"""
Shared connection pool for the session store and message log.

A single ``StorePool`` instance manages two ``aiosqlite.Connection`` objects
per database path:

- a **writer**, used only while holding the path's write lock, so every
  write transaction (append, expiry, close) runs alone;
- a **reader**, used for every query outside a write transaction.

In WAL mode the reader sees only committed data, so a message whose append
transaction has not committed yet is never visible to pagination reads.

Usage::

    pool = StorePool()

    sessions = SessionStore(config, pool=pool)
    messages = MessageLog(config, pool=pool)   # same DB path → same connections

    await sessions.initialize()   # opens the connections (idempotent on 2nd call)
    await messages.initialize()

    # … use stores …

    await pool.close_all()        # close all managed connections once at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("threadline.store.pool")


async def _open(path: str, *, wal_mode: bool, connection_timeout: float) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` pairs.

    Thread-safety: only safe to use from a single asyncio event loop. Do not
    share a ``StorePool`` across threads.

    For each unique *resolved* database path the pool holds exactly one
    writer and one reader.  Callers may call ``acquire()`` concurrently; only
    the first caller opens the connections, subsequent callers receive the
    same objects.

    The per-path ``asyncio.Lock`` returned by ``write_lock()`` serialises
    write transactions.  SQLite allows a single writer, and transactions on a
    shared connection would otherwise interleave their statements.
    """

    def __init__(self) -> None:
        self._writers: dict[str, aiosqlite.Connection] = {}
        self._readers: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}  # per-path open guards

    @staticmethod
    def resolve(db_path: str) -> str:
        return str(Path(db_path).expanduser().resolve())

    # ── Public API ─────────────────────────────────────────────────────────────

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> tuple[aiosqlite.Connection, aiosqlite.Connection]:
        """
        Return the shared ``(writer, reader)`` pair for *db_path*, opening it if needed.

        Args:
            db_path: Path to the database file (``~`` is expanded).
            wal_mode: Enable WAL journal mode on first open.
            connection_timeout: SQLite busy timeout in seconds.
        """
        resolved = self.resolve(db_path)

        # Fast path: connections already open
        if resolved in self._writers:
            return self._writers[resolved], self._readers[resolved]

        if resolved not in self._open_locks:
            self._open_locks[resolved] = asyncio.Lock()

        async with self._open_locks[resolved]:
            # Double-check after acquiring the lock
            if resolved in self._writers:
                return self._writers[resolved], self._readers[resolved]

            Path(resolved).parent.mkdir(parents=True, exist_ok=True)
            writer = await _open(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            try:
                reader = await _open(
                    resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
                )
            except Exception:
                await writer.close()
                raise

            self._writers[resolved] = writer
            self._readers[resolved] = reader
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connections_opened", db_path=resolved)
            return writer, reader

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write-serialisation lock for *db_path*.

        Raises ``KeyError`` if called before ``acquire()``.
        """
        return self._write_locks[self.resolve(db_path)]

    async def close_path(self, db_path: str) -> None:
        """Close and remove the connections for a single path."""
        resolved = self.resolve(db_path)
        writer = self._writers.pop(resolved, None)
        reader = self._readers.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        for conn in (reader, writer):
            if conn is not None:
                await conn.close()
        if writer is not None:
            _logger.debug("pool_connections_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._writers.keys()):
            await self.close_path(path)
