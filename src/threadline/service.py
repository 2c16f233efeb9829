"""Threadline SessionService: the primary public API entry point."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from threadline.errors import RateLimitedError, SessionNotActiveError, ThreadlineError
from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import StoreConfig, ThreadlineConfig
from threadline.models.message import Message, MessageDraft, Order
from threadline.models.session import Session
from threadline.ratelimit.limiter import Decision, RateLimiter
from threadline.responder.base import AgentResponder
from threadline.responder.dispatcher import ResponderDispatcher
from threadline.store.base import Clock
from threadline.store.messages import MessageLog
from threadline.store.pool import StorePool
from threadline.store.sessions import SessionStore


class SessionService:
    """
    Orchestrates rate limiting, the session store, the message log and the
    agent responder.

    Every operation first charges the caller's credential one request; a
    denial raises :class:`RateLimitedError` before anything else happens.

    Usage::

        async with SessionService.open(config, responder=EchoResponder()) as service:
            session = await service.create_session("cred_123")
            await service.send_message("cred_123", session.id, "hello")
            page = await service.list_messages("cred_123", session.id, limit=10)

    Sessions are readable and writable by any valid credential; ownership
    only counts toward the owner's concurrent-session ceiling.
    """

    def __init__(
        self,
        sessions: SessionStore,
        messages: MessageLog,
        limiter: RateLimiter,
        dispatcher: ResponderDispatcher,
        event_bus: EventBus,
        config: ThreadlineConfig,
        *,
        pool: StorePool | None = None,
    ) -> None:
        self._sessions = sessions
        self._messages = messages
        self._limiter = limiter
        self._dispatcher = dispatcher
        self._event_bus = event_bus
        self._config = config
        self._pool = pool
        self._sweeper_task: asyncio.Task[None] | None = None
        self._logger = structlog.get_logger("threadline.service")

    @classmethod
    async def create(
        cls,
        config: ThreadlineConfig | None = None,
        *,
        responder: AgentResponder | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        clock: Clock = time.time,
    ) -> SessionService:
        """
        Build and initialize the full stack on one database.

        Args:
            config: Threadline configuration. Defaults to ``ThreadlineConfig()``.
            responder: Agent responder invoked after each user message.
                None disables replies (topics are still assigned).
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if both ``db_path`` and ``config.store.db_path``
                are supplied.
            pool: Optional shared connection pool. When omitted the service
                creates one and closes it in :meth:`close`.
            clock: Time source in unix seconds; injected by tests.

        Returns:
            An initialized SessionService.
        """
        cfg = config or ThreadlineConfig()
        if db_path is not None:
            if config is not None and cfg.store.db_path != StoreConfig().db_path:
                raise ValueError(
                    "Specify db_path either via db_path= or config.store.db_path, not both."
                )
            cfg = cfg.model_copy(
                update={"store": cfg.store.model_copy(update={"db_path": db_path})}
            )

        owned_pool = StorePool() if pool is None else None
        shared_pool = pool or owned_pool
        event_bus = EventBus()
        sessions = SessionStore(
            cfg.store, cfg.session, shared_pool, event_bus=event_bus, clock=clock
        )
        messages = MessageLog(cfg.store, cfg.session, shared_pool, event_bus=event_bus, clock=clock)
        await sessions.initialize()
        await messages.initialize()

        limiter = RateLimiter(cfg.rate_limit, clock=clock, event_bus=event_bus)
        dispatcher = ResponderDispatcher(responder, messages, sessions, event_bus, cfg.responder)

        structlog.get_logger("threadline.service").info(
            "service_started",
            db_path=cfg.store.db_path,
            responder=type(responder).__name__ if responder is not None else None,
        )
        return cls(
            sessions,
            messages,
            limiter,
            dispatcher,
            event_bus,
            cfg,
            pool=owned_pool,
        )

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        config: ThreadlineConfig | None = None,
        *,
        responder: AgentResponder | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        clock: Clock = time.time,
    ) -> AsyncGenerator[SessionService, None]:
        """
        Create a service and use it as an async context manager.

        All parameters are identical to :meth:`create`. The service is closed
        (sweeper stopped, responder tasks cancelled, connections released)
        when the ``async with`` block exits, even on exception.
        """
        service = await cls.create(
            config, responder=responder, db_path=db_path, pool=pool, clock=clock
        )
        try:
            yield service
        finally:
            await service.close()

    # ── Operations ──────────────────────────────────────────────────────────────

    async def create_session(
        self,
        credential_id: str,
        initial_message: str | None = None,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """
        Create a session, optionally starting it with a user message.

        The initial message is appended as message 1 and handed to the agent
        responder in the background.

        Raises:
            RateLimitedError: Request budget exhausted, or the credential
                already owns ``max_active_sessions`` active sessions.
            ValidationError: The initial message is too long.
        """
        self._admit(credential_id)
        draft = None
        if initial_message is not None:
            draft = MessageDraft.user(initial_message)
            draft.validate_for_append(self._config.session.max_user_message_chars)

        async with self._limiter.credential_lock(credential_id):
            active = await self._sessions.count_active(credential_id)
            decision = self._limiter.check_sessions(credential_id, active)
            if not decision.permit:
                raise RateLimitedError(credential_id, decision)
            session = await self._sessions.create(credential_id, metadata=metadata)

        if draft is not None:
            message = await self._messages.append(session.id, draft)
            session.message_count = message.id
            session.last_message_at = message.created_at
            self._dispatcher.dispatch(session.id, message)
        return session

    async def send_message(self, credential_id: str, session_id: str, content: str) -> Message:
        """
        Append a user message and hand it to the agent responder.

        Returns as soon as the message is committed; the responder's replies
        arrive later as separate appends.  Retrying after a failure may store
        the message twice; appends are not deduplicated.

        Raises:
            RateLimitedError: Request budget exhausted.
            ValidationError: Content exceeds the user message bound.
            SessionNotFoundError: Unknown session.
            SessionNotActiveError: Session is EXPIRED or CLOSED.
        """
        self._admit(credential_id)
        draft = MessageDraft.user(content)
        draft.validate_for_append(self._config.session.max_user_message_chars)

        session = await self._sessions.get(session_id)
        if not session.status.accepts_writes:
            raise SessionNotActiveError(session_id, session.status)

        message = await self._messages.append(session_id, draft)
        try:
            await self._sessions.touch(session_id, at=message.created_at)
        except SessionNotActiveError as exc:
            # The message is committed; the session closed right after it
            self._logger.warning(
                "touch_after_append_failed", session_id=session_id, status=exc.status.value
            )
            return message
        self._dispatcher.dispatch(session_id, message)
        return message

    async def list_messages(
        self,
        credential_id: str,
        session_id: str,
        limit: int | None = None,
        order: Order | str = "asc",
        after: int | None = None,
        before: int | None = None,
    ) -> list[Message]:
        """
        Read one page of a session's messages (see :meth:`MessageLog.range`).

        Raises:
            RateLimitedError: Request budget exhausted.
            SessionNotFoundError: Unknown session.
            ValidationError: Bad ``limit``, ``order`` or cursor.
        """
        self._admit(credential_id)
        await self._sessions.get(session_id)
        return await self._messages.range(
            session_id, limit=limit, order=order, after=after, before=before
        )

    async def get_session(self, credential_id: str, session_id: str) -> Session:
        """
        Fetch a session with expiry applied.

        Raises:
            RateLimitedError: Request budget exhausted.
            SessionNotFoundError: Unknown session.
        """
        self._admit(credential_id)
        return await self._sessions.get(session_id)

    async def close_session(self, credential_id: str, session_id: str) -> Session:
        """Close a session for good. Idempotent."""
        self._admit(credential_id)
        return await self._sessions.close(session_id)

    def rate_limit_status(self, credential_id: str) -> Decision:
        """Current request budget for a credential, without charging it."""
        return self._limiter.status(credential_id)

    # ── Expiry sweeper ──────────────────────────────────────────────────────────

    async def sweep(self) -> list[str]:
        """
        Run one expiry sweep and drop stale rate-limit counters.

        Never raises: a failing sweep is logged and retried on the next tick.
        """
        try:
            expired = await self._sessions.expire_idle()
        except ThreadlineError as exc:
            self._logger.error("sweep_failed", error=str(exc))
            return []
        self._limiter.purge_stale()
        return expired

    def start_sweeper(self) -> None:
        """Start the periodic expiry sweep. No-op if it is already running."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        self._sweeper_task = asyncio.create_task(self._sweep_loop())
        self._logger.info(
            "sweeper_started", interval_seconds=self._config.session.sweep_interval_seconds
        )

    async def stop_sweeper(self) -> None:
        task = self._sweeper_task
        self._sweeper_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _sweep_loop(self) -> None:
        interval = self._config.session.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    # ── Lifecycle ───────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """
        Stop background work and release the database.

        In-flight responder calls are cancelled; user messages they were
        triggered by are already committed.
        """
        await self.stop_sweeper()
        await self._dispatcher.close()
        await self._event_bus.drain()
        await self._messages.release()
        await self._sessions.release()
        if self._pool is not None:
            await self._pool.close_all()
        self._logger.info("service_closed")

    async def __aenter__(self) -> SessionService:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Private Helpers ─────────────────────────────────────────────────────────

    def _admit(self, credential_id: str) -> None:
        decision = self._limiter.allow(credential_id)
        if not decision.permit:
            raise RateLimitedError(credential_id, decision)

    # ── Properties ──────────────────────────────────────────────────────────────

    @property
    def config(self) -> ThreadlineConfig:
        return self._config

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def messages(self) -> MessageLog:
        """The message log; the agent responder's callback path appends here."""
        return self._messages

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def dispatcher(self) -> ResponderDispatcher:
        return self._dispatcher

    @property
    def event_bus(self) -> EventBus:
        """The event bus shared by every component. Subscribe to monitor events."""
        return self._event_bus

    def subscribe(self, event: ThreadlineEvent, handler: Any) -> None:
        """Convenience wrapper for ``service.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)
