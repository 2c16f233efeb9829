"""Tests for the per-credential fixed-window RateLimiter."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from threadline.events.bus import ThreadlineEvent
from threadline.models.config import RateLimitConfig
from threadline.ratelimit.limiter import RateLimiter


def make_limiter(clock, event_bus=None, **limits) -> RateLimiter:
    return RateLimiter(RateLimitConfig(**limits), clock=clock, event_bus=event_bus)


class TestAllow:
    def test_n_plus_first_call_is_denied(self, clock):
        """With a per-minute limit of N, call N+1 in the same window is denied."""
        limiter = make_limiter(clock, requests_per_minute=3)
        decisions = [limiter.allow("cred") for _ in range(3)]
        assert all(d.permit for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

        denied = limiter.allow("cred")
        assert not denied.permit
        assert denied.remaining == 0
        assert denied.limit == 3
        assert denied.window == "minute"
        assert denied.reset_at == int(clock.now) + 60

    def test_denied_calls_consume_nothing(self, clock):
        limiter = make_limiter(clock, requests_per_minute=1, requests_per_hour=5)
        assert limiter.allow("cred").permit
        for _ in range(10):
            assert not limiter.allow("cred").permit
        clock.advance(60)
        decision = limiter.allow("cred")
        assert decision.permit
        # Only the two permitted calls count toward the hour
        assert limiter._buckets["cred"]["hour"].count == 2

    def test_window_resets_at_boundary(self, clock):
        limiter = make_limiter(clock, requests_per_minute=2)
        clock.advance(30)
        limiter.allow("cred")
        limiter.allow("cred")
        assert not limiter.allow("cred").permit
        clock.advance(29)
        assert not limiter.allow("cred").permit
        clock.advance(1)
        assert limiter.allow("cred").permit

    def test_hour_window_binds(self, clock):
        limiter = make_limiter(clock, requests_per_minute=100, requests_per_hour=3)
        for _ in range(3):
            assert limiter.allow("cred").permit
            clock.advance(61)
        denied = limiter.allow("cred")
        assert not denied.permit
        assert denied.window == "hour"
        assert denied.limit == 3
        assert denied.reset_at == int(clock.now // 3600) * 3600 + 3600

    def test_both_exhausted_reports_later_reset(self, clock):
        limiter = make_limiter(clock, requests_per_minute=2, requests_per_hour=2)
        limiter.allow("cred")
        limiter.allow("cred")
        denied = limiter.allow("cred")
        assert denied.window == "hour"
        assert denied.reset_at == int(clock.now) + 3600

    def test_credentials_are_independent(self, clock):
        limiter = make_limiter(clock, requests_per_minute=1)
        assert limiter.allow("a").permit
        assert not limiter.allow("a").permit
        assert limiter.allow("b").permit

    def test_cost(self, clock):
        limiter = make_limiter(clock, requests_per_minute=5)
        assert limiter.allow("cred", cost=4).remaining == 1
        assert not limiter.allow("cred", cost=2).permit
        assert limiter.allow("cred", cost=1).permit

    def test_cost_must_be_positive(self, clock):
        with pytest.raises(ValueError):
            make_limiter(clock).allow("cred", cost=0)

    def test_denial_published(self, clock, event_bus, collected_events):
        limiter = make_limiter(clock, event_bus=event_bus, requests_per_minute=1)
        limiter.allow("cred")
        limiter.allow("cred")
        events = collected_events(ThreadlineEvent.RATE_LIMITED)
        assert len(events) == 1
        assert events[0]["credential_id"] == "cred"
        assert events[0]["window"] == "minute"

    def test_concurrent_callers_never_exceed_limit(self, clock):
        """Check-and-increment is atomic across threads."""
        limiter = make_limiter(clock, requests_per_minute=10)
        with ThreadPoolExecutor(max_workers=16) as executor:
            decisions = list(executor.map(lambda _: limiter.allow("cred"), range(200)))
        assert sum(d.permit for d in decisions) == 10


class TestStatus:
    def test_status_does_not_count(self, clock):
        limiter = make_limiter(clock, requests_per_minute=2)
        for _ in range(5):
            status = limiter.status("cred")
        assert status.permit
        assert status.remaining == 2
        assert limiter.allow("cred").remaining == 1

    def test_status_of_exhausted_credential(self, clock):
        limiter = make_limiter(clock, requests_per_minute=1)
        limiter.allow("cred")
        status = limiter.status("cred")
        assert not status.permit
        assert status.remaining == 0

    def test_status_after_window_rollover(self, clock):
        limiter = make_limiter(clock, requests_per_minute=1, requests_per_hour=10)
        limiter.allow("cred")
        clock.advance(60)
        status = limiter.status("cred")
        assert status.permit
        assert status.remaining == 1

    def test_retry_after(self, clock):
        limiter = make_limiter(clock, requests_per_minute=1)
        limiter.allow("cred")
        clock.advance(15.5)
        denied = limiter.allow("cred")
        assert limiter.retry_after(denied) == 45
        clock.advance(100)
        assert limiter.retry_after(denied) == 0


class TestSessionCeiling:
    def test_under_ceiling(self, clock):
        limiter = make_limiter(clock, max_active_sessions=3)
        decision = limiter.check_sessions("cred", 2)
        assert decision.permit
        assert decision.remaining == 1
        assert decision.window == "sessions"

    def test_at_ceiling(self, clock, event_bus, collected_events):
        limiter = make_limiter(clock, event_bus=event_bus, max_active_sessions=3)
        decision = limiter.check_sessions("cred", 3)
        assert not decision.permit
        assert decision.remaining == 0
        assert decision.limit == 3
        assert collected_events(ThreadlineEvent.RATE_LIMITED)[0]["window"] == "sessions"

    async def test_credential_lock_is_per_credential(self, clock):
        limiter = make_limiter(clock)
        assert limiter.credential_lock("a") is limiter.credential_lock("a")
        assert limiter.credential_lock("a") is not limiter.credential_lock("b")


class TestPurge:
    def test_purge_stale_drops_idle_credentials(self, clock):
        limiter = make_limiter(clock)
        limiter.allow("old")
        clock.advance(3600)
        limiter.allow("fresh")
        assert limiter.purge_stale() == 1
        assert "old" not in limiter._buckets
        assert "fresh" in limiter._buckets
