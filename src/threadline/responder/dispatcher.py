"""Background dispatch of user messages to the agent responder."""

from __future__ import annotations

import asyncio

import structlog

from threadline.errors import ThreadlineError
from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import ResponderConfig
from threadline.models.message import Message
from threadline.responder.base import AgentResponder, derive_topic
from threadline.store.messages import MessageLog
from threadline.store.sessions import SessionStore


class ResponderDispatcher:
    """
    Runs the agent responder in the background after a user message commits.

    Guarantees:
    - ``dispatch()`` never blocks and never raises; the caller's user
      message is already committed and is never rolled back.
    - At most ``concurrency`` responder calls run at once; each is bounded by
      ``timeout_seconds``.
    - Replies are appended one by one through :meth:`MessageLog.append`, so
      each one updates ``message_count`` and ``last_message_at`` on its own.
    - Failures (responder errors, timeouts, a session that expired or closed
      meanwhile) are logged and published as ``RESPONDER_FAILED``.

    When topic assignment is enabled, the first user message of a session
    also sets the session topic.

    Example::

        dispatcher = ResponderDispatcher(EchoResponder(), messages, sessions, bus, config)
        dispatcher.dispatch(session_id, user_message)   # returns immediately
        await dispatcher.wait_for_pending()             # e.g. in tests or at shutdown
    """

    def __init__(
        self,
        responder: AgentResponder | None,
        messages: MessageLog,
        sessions: SessionStore,
        event_bus: EventBus,
        config: ResponderConfig | None = None,
    ) -> None:
        self._responder = responder
        self._messages = messages
        self._sessions = sessions
        self._event_bus = event_bus
        self._config = config or ResponderConfig()
        self._semaphore = asyncio.Semaphore(self._config.concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = structlog.get_logger("threadline.responder")

    @property
    def pending(self) -> int:
        """Number of dispatches still running."""
        return sum(1 for t in self._tasks if not t.done())

    def dispatch(self, session_id: str, trigger: Message) -> asyncio.Task[None] | None:
        """
        Schedule background handling of ``trigger`` and return immediately.

        Returns:
            The scheduled task, or None when there is nothing to do (no
            responder and no topic to assign).
        """
        wants_topic = self._config.assign_topics and trigger.type == "user" and trigger.id == 1
        if self._responder is None and not wants_topic:
            return None
        task = asyncio.create_task(self._run(session_id, trigger, wants_topic))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_for_pending(self) -> None:
        """Await every in-flight dispatch to natural completion."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel in-flight dispatches and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._logger.debug("dispatcher_closed", cancelled=len(tasks))

    # ── Internal implementation ─────────────────────────────────────────────────

    async def _run(self, session_id: str, trigger: Message, wants_topic: bool) -> None:
        if wants_topic:
            await self._assign_topic(session_id, trigger)
        responder = self._responder
        if responder is None:
            return

        async with self._semaphore:
            try:
                async with asyncio.timeout(self._config.timeout_seconds):
                    appended = await self._respond(responder, session_id)
            except TimeoutError:
                self._fail(session_id, f"responder timed out after {self._config.timeout_seconds}s")
            except ThreadlineError as exc:
                self._fail(session_id, exc.message)
            except Exception as exc:
                self._logger.exception("responder_error", session_id=session_id)
                self._fail(session_id, str(exc) or type(exc).__name__)
            else:
                self._logger.info(
                    "responder_completed",
                    session_id=session_id,
                    trigger_id=trigger.id,
                    replies=appended,
                )

    async def _respond(self, responder: AgentResponder, session_id: str) -> int:
        conversation = [m async for m in self._messages.iter_messages(session_id)]
        appended = 0
        async for reply in responder.respond(session_id, conversation):
            await self._messages.append(session_id, reply.to_draft())
            appended += 1
        return appended

    async def _assign_topic(self, session_id: str, trigger: Message) -> None:
        topic = derive_topic(trigger.content, max_words=self._config.topic_max_words)
        if topic is None:
            return
        try:
            await self._sessions.set_topic(session_id, topic)
        except ThreadlineError as exc:
            self._logger.warning("topic_assignment_failed", session_id=session_id, error=str(exc))

    def _fail(self, session_id: str, error: str) -> None:
        self._logger.warning("responder_failed", session_id=session_id, error=error)
        self._event_bus.publish(
            ThreadlineEvent.RESPONDER_FAILED, {"session_id": session_id, "error": error}
        )
