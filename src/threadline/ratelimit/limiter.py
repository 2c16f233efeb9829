"""Per-credential fixed-window rate limiting."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections.abc import Callable
from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict

from threadline.events.bus import EventBus, ThreadlineEvent
from threadline.models.config import RateLimitConfig

Window = Literal["minute", "hour", "sessions"]

# (name, size in seconds), shortest first: ties on "remaining" resolve to it
_WINDOWS: tuple[tuple[Window, int], ...] = (("minute", 60), ("hour", 3600))


class Decision(BaseModel):
    """
    Outcome of a rate-limit check.

    A denial is a normal outcome, not an exception.  The fields map directly
    onto the ``X-RateLimit-*`` response headers.
    """

    model_config = ConfigDict(frozen=True)

    permit: bool
    limit: int
    """Limit of the binding window."""
    remaining: int
    """Requests left in the binding window; always 0 on denial."""
    reset_at: int
    """Unix seconds at which the binding window resets."""
    window: Window
    """The window that determined this decision."""


class _Bucket:
    __slots__ = ("count", "start")

    def __init__(self, start: int) -> None:
        self.start = start
        self.count = 0


class RateLimiter:
    """
    Counts requests per credential in aligned fixed windows.

    Each window is keyed by ``floor(now / size)``; its counter starts at zero
    when a new window begins.  A request is permitted only if *every* window
    has room for its ``cost``; a permitted request increments every window
    exactly once, a denied one increments nothing.

    Check-and-increment runs under a ``threading.Lock`` with no awaits
    inside, so it is atomic for concurrent coroutines and threads alike.

    Example::

        limiter = RateLimiter(RateLimitConfig(requests_per_minute=2))
        limiter.allow("cred").permit   # True
        limiter.allow("cred").permit   # True
        limiter.allow("cred").permit   # False, remaining == 0
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._limits: dict[Window, int] = {
            "minute": self._config.requests_per_minute,
            "hour": self._config.requests_per_hour,
        }
        self._clock = clock
        self._event_bus = event_bus
        self._buckets: dict[str, dict[Window, _Bucket]] = {}
        self._lock = threading.Lock()
        self._credential_locks: dict[str, asyncio.Lock] = {}
        self._logger = structlog.get_logger("threadline.ratelimit")

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def allow(self, credential_id: str, cost: int = 1) -> Decision:
        """
        Check and count a request for ``credential_id``.

        Args:
            credential_id: The caller's credential.
            cost: Number of request units this call consumes.

        Returns:
            A permitting Decision describing the tightest window, or a denying
            Decision with ``remaining == 0`` and ``reset_at`` set to the start
            of the next window of the exhausted window (the later one when
            several are exhausted).

        Raises:
            ValueError: If ``cost`` is less than 1.
        """
        if cost < 1:
            raise ValueError(f"cost must be >= 1, got {cost}")
        now = self._clock()
        with self._lock:
            buckets = self._current_buckets(credential_id, now)
            exhausted = [
                (name, size)
                for name, size in _WINDOWS
                if buckets[name].count + cost > self._limits[name]
            ]
            if exhausted:
                name, size = max(exhausted, key=lambda w: buckets[w[0]].start + w[1])
                decision = Decision(
                    permit=False,
                    limit=self._limits[name],
                    remaining=0,
                    reset_at=buckets[name].start + size,
                    window=name,
                )
            else:
                for name, _ in _WINDOWS:
                    buckets[name].count += cost
                decision = self._snapshot(buckets, permit=True)

        if not decision.permit:
            self._logger.info(
                "rate_limited",
                credential_id=credential_id,
                window=decision.window,
                reset_at=decision.reset_at,
            )
            if self._event_bus is not None:
                self._event_bus.publish(
                    ThreadlineEvent.RATE_LIMITED,
                    {
                        "credential_id": credential_id,
                        "window": decision.window,
                        "reset_at": decision.reset_at,
                    },
                )
        return decision

    def status(self, credential_id: str) -> Decision:
        """
        Read-only snapshot of the credential's budget. Counts nothing.

        ``permit`` says whether a request of cost 1 would currently be allowed.
        """
        now = self._clock()
        with self._lock:
            existing = self._buckets.get(credential_id, {})
            buckets: dict[Window, _Bucket] = {}
            for name, size in _WINDOWS:
                start = _window_start(now, size)
                bucket = existing.get(name)
                if bucket is None or bucket.start != start:
                    bucket = _Bucket(start)
                buckets[name] = bucket
            return self._snapshot(buckets)

    def check_sessions(self, credential_id: str, active_sessions: int) -> Decision:
        """
        Check the concurrent-session ceiling before a new session is created.

        The caller supplies the credential's current ACTIVE session count and
        should hold :meth:`credential_lock` across the count and the create.
        ``reset_at`` is advisory (the next minute boundary): slots free up when
        sessions expire or close, not on a schedule.
        """
        limit = self._config.max_active_sessions
        permit = active_sessions < limit
        decision = Decision(
            permit=permit,
            limit=limit,
            remaining=max(0, limit - active_sessions) if permit else 0,
            reset_at=_window_start(self._clock(), 60) + 60,
            window="sessions",
        )
        if not permit:
            self._logger.info(
                "session_ceiling_reached",
                credential_id=credential_id,
                active_sessions=active_sessions,
            )
            if self._event_bus is not None:
                self._event_bus.publish(
                    ThreadlineEvent.RATE_LIMITED,
                    {
                        "credential_id": credential_id,
                        "window": decision.window,
                        "reset_at": decision.reset_at,
                    },
                )
        return decision

    def retry_after(self, decision: Decision) -> int:
        """Whole seconds until ``decision.reset_at``, never negative."""
        return max(0, math.ceil(decision.reset_at - self._clock()))

    def credential_lock(self, credential_id: str) -> asyncio.Lock:
        """Async lock that serialises session creation for one credential."""
        lock = self._credential_locks.get(credential_id)
        if lock is None:
            lock = self._credential_locks.setdefault(credential_id, asyncio.Lock())
        return lock

    def purge_stale(self) -> int:
        """
        Drop counters of credentials with no request in the current hour window.

        Returns:
            Number of credentials dropped.
        """
        hour_start = _window_start(self._clock(), 3600)
        with self._lock:
            stale = [
                cred
                for cred, buckets in self._buckets.items()
                if buckets["hour"].start < hour_start
            ]
            for cred in stale:
                del self._buckets[cred]
                lock = self._credential_locks.get(cred)
                if lock is not None and not lock.locked():
                    del self._credential_locks[cred]
        return len(stale)

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _current_buckets(self, credential_id: str, now: float) -> dict[Window, _Bucket]:
        """Return the credential's buckets, rolling over any that belong to a past window."""
        buckets = self._buckets.setdefault(credential_id, {})
        for name, size in _WINDOWS:
            start = _window_start(now, size)
            bucket = buckets.get(name)
            if bucket is None or bucket.start != start:
                buckets[name] = _Bucket(start)
        return buckets

    def _snapshot(
        self, buckets: dict[Window, _Bucket], *, permit: bool | None = None
    ) -> Decision:
        name, size = min(_WINDOWS, key=lambda w: self._limits[w[0]] - buckets[w[0]].count)
        remaining = max(0, self._limits[name] - buckets[name].count)
        return Decision(
            permit=(
                permit
                if permit is not None
                else all(buckets[n].count < self._limits[n] for n, _ in _WINDOWS)
            ),
            limit=self._limits[name],
            remaining=remaining,
            reset_at=buckets[name].start + size,
            window=name,
        )


def _window_start(now: float, size: int) -> int:
    return int(now // size) * size
