"""In-process pub/sub event bus for Threadline lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["ThreadlineEvent", dict[str, Any]], None | Awaitable[None]]


class ThreadlineEvent(StrEnum):
    """All event types published by Threadline components.

    Typed payload definitions for each event live in
    :mod:`threadline.events.payloads`.

    ``SESSION_CREATED``
        ``session_id``, ``credential_id``

    ``SESSION_EXPIRED``
        ``session_id``, ``last_activity`` (unix ms). Published once per
        session, by whichever path (lazy read, append or sweep) applied it.

    ``SESSION_CLOSED``
        ``session_id``

    ``TOPIC_ASSIGNED``
        ``session_id``, ``topic``

    ``MESSAGE_APPENDED``
        ``session_id``, ``message_id`` (int), ``type``

    ``RATE_LIMITED``
        ``credential_id``, ``window``, ``reset_at`` (unix seconds)

    ``RESPONDER_FAILED``
        ``session_id``, ``error``
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_EXPIRED = "session.expired"
    SESSION_CLOSED = "session.closed"
    TOPIC_ASSIGNED = "topic.assigned"

    # Message lifecycle
    MESSAGE_APPENDED = "message.appended"

    # Throttling
    RATE_LIMITED = "rate.limited"

    # Agent responder
    RESPONDER_FAILED = "responder.failed"


class EventBus:
    """
    In-process fan-out of :class:`ThreadlineEvent` notifications.

    Stores publish only after their transaction commits, so a subscriber
    never hears about a write that was rolled back.  Handlers receive
    ``(event, payload)``:

    - plain functions run inside ``publish()``, in subscription order;
    - coroutine functions are started as tasks on the running loop and
      tracked until :meth:`drain` (outside a loop they are discarded);
    - a failing handler is logged and skipped, the publisher never sees it.

    Example::

        bus = EventBus()
        bus.subscribe(
            ThreadlineEvent.SESSION_EXPIRED,
            lambda event, payload: print("expired", payload["session_id"]),
        )
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._by_event: dict[ThreadlineEvent, list[Handler]] = {}
        self._wildcard: list[Handler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger or structlog.get_logger("threadline.events")

    def subscribe(self, event: ThreadlineEvent, handler: Handler) -> None:
        """Call ``handler`` for every ``event`` published from now on."""
        self._by_event.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Call ``handler`` for every event type."""
        self._wildcard.append(handler)

    def unsubscribe(self, event: ThreadlineEvent, handler: Handler) -> None:
        """Remove a handler registered with :meth:`subscribe`. Unknown handlers are ignored."""
        handlers = self._by_event.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: ThreadlineEvent, payload: dict[str, Any]) -> None:
        for handler in [*self._by_event.get(event, ()), *self._wildcard]:
            try:
                outcome = handler(event, payload)
            except Exception as exc:
                self._report(event, handler, exc)
                continue
            if asyncio.iscoroutine(outcome):
                self._schedule(event, handler, outcome)

    async def drain(self) -> None:
        """Wait for async handlers started by earlier ``publish()`` calls."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _schedule(self, event: ThreadlineEvent, handler: Handler, coro: Any) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                self._report(event, handler, t.exception())

        self._tasks.add(task)
        task.add_done_callback(_done)

    def _report(self, event: ThreadlineEvent, handler: Handler, exc: BaseException | None) -> None:
        self._logger.error(
            "event_handler_failed",
            event_type=event.value,
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
