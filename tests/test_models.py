"""Tests for the session state machine, message drafts and config models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from threadline.errors import ValidationError
from threadline.models.config import ResponderConfig, SessionConfig, ThreadlineConfig
from threadline.models.message import USER_MESSAGE_MAX_CHARS, Message, MessageDraft
from threadline.models.session import Session, SessionStatus, make_id


class TestSessionStatus:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (SessionStatus.ACTIVE, SessionStatus.EXPIRED),
            (SessionStatus.ACTIVE, SessionStatus.CLOSED),
            (SessionStatus.EXPIRED, SessionStatus.CLOSED),
            (SessionStatus.CLOSED, SessionStatus.CLOSED),
        ],
    )
    def test_allowed_transitions(self, current, target):
        assert current.can_transition_to(target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (SessionStatus.EXPIRED, SessionStatus.ACTIVE),
            (SessionStatus.CLOSED, SessionStatus.ACTIVE),
            (SessionStatus.CLOSED, SessionStatus.EXPIRED),
        ],
    )
    def test_no_way_back(self, current, target):
        """Once a session leaves ACTIVE it never returns, and CLOSED is terminal."""
        assert not current.can_transition_to(target)

    def test_only_active_accepts_writes(self):
        assert SessionStatus.ACTIVE.accepts_writes
        assert not SessionStatus.EXPIRED.accepts_writes
        assert not SessionStatus.CLOSED.accepts_writes

    def test_string_values(self):
        assert SessionStatus("EXPIRED") is SessionStatus.EXPIRED
        assert str(SessionStatus.ACTIVE) == "ACTIVE"


class TestSession:
    def test_last_activity_falls_back_to_created_at(self):
        s = Session(id="thr_1", credential_id="c", status=SessionStatus.ACTIVE, created_at=1_000)
        assert s.last_activity == 1_000
        s.last_message_at = 5_000
        assert s.last_activity == 5_000

    def test_idle_threshold_is_strict(self):
        s = Session(id="thr_1", credential_id="c", status=SessionStatus.ACTIVE, created_at=0)
        assert not s.is_idle(now_ms=60_000, timeout_ms=60_000)
        assert s.is_idle(now_ms=60_001, timeout_ms=60_000)

    def test_make_id_prefix_and_uniqueness(self):
        ids = {make_id("thr") for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("thr_") for i in ids)


class TestMessageDraft:
    def test_user_draft_at_limit_is_valid(self):
        MessageDraft.user("x" * USER_MESSAGE_MAX_CHARS).validate_for_append()

    def test_user_draft_over_limit(self):
        with pytest.raises(ValidationError, match="limit is 4000"):
            MessageDraft.user("x" * (USER_MESSAGE_MAX_CHARS + 1)).validate_for_append()

    def test_limit_applies_to_user_messages_only(self):
        MessageDraft(type="assistant", content="x" * 10_000).validate_for_append()

    def test_unknown_type(self):
        with pytest.raises(ValidationError, match="Unknown message type"):
            MessageDraft(type="narrator", content="hi").validate_for_append()

    def test_tool_requires_tool_call_id(self):
        with pytest.raises(ValidationError):
            MessageDraft(type="tool", content="{}").validate_for_append()
        MessageDraft(type="tool", content="{}", tool_call_id="call_1").validate_for_append()

    def test_tool_call_id_only_on_tool_messages(self):
        with pytest.raises(ValidationError):
            MessageDraft(type="assistant", content="hi", tool_call_id="call_1").validate_for_append()

    def test_message_rejects_unknown_type(self):
        with pytest.raises(PydanticValidationError):
            Message(id=1, session_id="thr_1", type="narrator", content="x", created_at=0)


class TestConfig:
    def test_defaults(self):
        cfg = ThreadlineConfig.default()
        assert cfg.session.inactivity_timeout_seconds == 86_400
        assert cfg.session.default_page_size == 20
        assert cfg.session.max_page_size == 100
        assert cfg.session.max_user_message_chars == 4000
        assert cfg.rate_limit.requests_per_minute == 60
        assert cfg.rate_limit.requests_per_hour == 1000
        assert cfg.rate_limit.max_active_sessions == 100

    def test_inactivity_timeout_ms(self):
        assert SessionConfig(inactivity_timeout_seconds=2).inactivity_timeout_ms == 2_000

    def test_default_page_size_cannot_exceed_max(self):
        with pytest.raises(PydanticValidationError):
            SessionConfig(default_page_size=50, max_page_size=10)

    def test_responder_bounds(self):
        with pytest.raises(PydanticValidationError):
            ResponderConfig(concurrency=0)
        with pytest.raises(PydanticValidationError):
            ResponderConfig(timeout_seconds=0)
