"""Shared fixtures for Threadline tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import StoreConfig, ThreadlineConfig
from threadline.models.message import MessageDraft
from threadline.store.messages import MessageLog
from threadline.store.pool import StorePool
from threadline.store.sessions import SessionStore

# Aligned to both a minute and an hour boundary
EPOCH = 1_699_999_200.0


class FakeClock:
    """Controllable time source in unix seconds."""

    def __init__(self, start: float = EPOCH) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """ThreadlineConfig with a temp database path."""
    return ThreadlineConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[ThreadlineEvent, dict[str, Any]]] = []

    def _collect(event: ThreadlineEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def session_store(config, pool, event_bus, clock):
    """Initialized SessionStore on the shared pool, bus and fake clock."""
    s = SessionStore(config.store, config.session, pool, event_bus=event_bus, clock=clock)
    await s.initialize()
    yield s
    await s.release()


@pytest_asyncio.fixture
async def message_log(config, pool, event_bus, clock, session_store):
    """Initialized MessageLog on the same database as ``session_store``."""
    log = MessageLog(config.store, config.session, pool, event_bus=event_bus, clock=clock)
    await log.initialize()
    yield log
    await log.release()


@pytest_asyncio.fixture
async def session_id(session_store):
    """A freshly created ACTIVE session owned by ``cred_test``."""
    session = await session_store.create("cred_test")
    return session.id


def events_of(bus: EventBus, event: ThreadlineEvent) -> list[dict[str, Any]]:
    return [payload for e, payload in bus.collected if e is event]  # type: ignore[attr-defined]


@pytest.fixture
def collected_events(event_bus):
    """Return a function ``(event) -> [payload, ...]`` over the collected events."""
    return lambda event: events_of(event_bus, event)


@pytest.fixture
def fill():
    """Return ``async fill(log, session_id, n)`` appending n user messages ``m1..mn``."""

    async def _fill(log: MessageLog, session_id: str, n: int, clock: FakeClock | None = None):
        messages = []
        for i in range(1, n + 1):
            messages.append(await log.append(session_id, MessageDraft.user(f"m{i}")))
            if clock is not None:
                clock.advance(0.001)
        return messages

    return _fill
