"""Tests for the HTTP surface, settings and API key validation."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from threadline.api import ServerSettings, StaticKeyValidator, create_app
from threadline.errors import UnauthorizedError

KEY_A = {"api-key": "k-test-a"}
KEY_B = {"api-key": "k-test-b"}
RATE_HEADERS = ("X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset")


def make_settings(tmp_path, **overrides) -> ServerSettings:
    values = {
        "db_path": str(tmp_path / "api.db"),
        "api_keys": "k-test-a=cred_a, k-test-b=cred_b",
        "responder": "echo",
    }
    values.update(overrides)
    return ServerSettings(**values)


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(make_settings(tmp_path))) as c:
        yield c


def wait_for_replies(client: TestClient) -> None:
    client.portal.call(client.app.state.service.dispatcher.wait_for_pending)


class TestAuth:
    def test_health_needs_no_key(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_key(self, client):
        response = client.post("/thread")
        assert response.status_code == 401
        assert response.json() == {
            "error": {"code": "unauthorized", "message": "Missing or invalid API key"}
        }
        assert not any(h in response.headers for h in RATE_HEADERS)

    def test_unknown_key(self, client):
        response = client.get("/thread/thr_x", headers={"api-key": "nope"})
        assert response.status_code == 401


class TestThreads:
    def test_create_thread(self, client):
        response = client.post("/thread", headers=KEY_A)
        assert response.status_code == 201
        body = response.json()
        assert set(body) == {"id", "createdAt"}
        assert body["id"].startswith("thr_")
        assert all(h in response.headers for h in RATE_HEADERS)

    def test_create_with_message_and_reply(self, client):
        thread_id = client.post("/thread", headers=KEY_A, json={"message": "hello"}).json()["id"]
        wait_for_replies(client)

        messages = client.get(f"/thread/{thread_id}/messages", headers=KEY_A).json()
        assert [(m["id"], m["type"], m["content"]) for m in messages] == [
            (1, "user", "hello"),
            (2, "assistant", "Echo: hello"),
        ]
        assert "createdAt" in messages[0]
        assert "toolCallId" not in messages[0]

        thread = client.get(f"/thread/{thread_id}", headers=KEY_A).json()
        assert thread["status"] == "ACTIVE"
        assert thread["messageCount"] == 2
        assert thread["topic"] == "hello"
        assert thread["lastMessageAt"] >= thread["createdAt"]

    def test_send_message(self, client):
        thread_id = client.post("/thread", headers=KEY_A).json()["id"]
        response = client.post(
            f"/thread/{thread_id}/messages", headers=KEY_B, json={"message": "from b"}
        )
        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_paging(self, client):
        thread_id = client.post("/thread", headers=KEY_A).json()["id"]
        for i in range(4):
            client.post(f"/thread/{thread_id}/messages", headers=KEY_A, json={"message": f"m{i}"})
        wait_for_replies(client)

        url = f"/thread/{thread_id}/messages"
        first = client.get(url, headers=KEY_A, params={"limit": 3}).json()
        assert [m["id"] for m in first] == [1, 2, 3]
        second = client.get(url, headers=KEY_A, params={"limit": 3, "after": 3}).json()
        assert [m["id"] for m in second] == [4, 5, 6]
        newest = client.get(url, headers=KEY_A, params={"limit": 2, "order": "desc"}).json()
        assert [m["id"] for m in newest] == [8, 7]
        older = client.get(
            url, headers=KEY_A, params={"limit": 2, "order": "desc", "before": 7}
        ).json()
        assert [m["id"] for m in older] == [6, 5]

    def test_unknown_thread(self, client):
        response = client.get("/thread/thr_missing", headers=KEY_A)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert all(h in response.headers for h in RATE_HEADERS)

    def test_closed_thread_rejects_messages(self, client):
        thread_id = client.post("/thread", headers=KEY_A).json()["id"]
        client.portal.call(client.app.state.service.sessions.close, thread_id)
        response = client.post(
            f"/thread/{thread_id}/messages", headers=KEY_A, json={"message": "hi"}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "session_not_active"


class TestValidation:
    @pytest.mark.parametrize("message", ["", "x" * 4001])
    def test_message_length(self, client, message):
        thread_id = client.post("/thread", headers=KEY_A).json()["id"]
        response = client.post(
            f"/thread/{thread_id}/messages", headers=KEY_A, json={"message": message}
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"

    def test_missing_body(self, client):
        thread_id = client.post("/thread", headers=KEY_A).json()["id"]
        response = client.post(f"/thread/{thread_id}/messages", headers=KEY_A)
        assert response.status_code == 422

    @pytest.mark.parametrize(
        "params", [{"limit": 0}, {"limit": 101}, {"limit": "ten"}, {"order": "up"}, {"after": "x"}]
    )
    def test_bad_query(self, client, params):
        thread_id = client.post("/thread", headers=KEY_A).json()["id"]
        response = client.get(f"/thread/{thread_id}/messages", headers=KEY_A, params=params)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert all(h in response.headers for h in RATE_HEADERS)


class TestRateLimitHeaders:
    def test_remaining_counts_down(self, tmp_path):
        settings = make_settings(tmp_path, requests_per_minute=1000, requests_per_hour=5)
        with TestClient(create_app(settings)) as client:
            remaining = [
                int(client.post("/thread", headers=KEY_A).headers["X-RateLimit-Remaining"])
                for _ in range(3)
            ]
            assert remaining == [4, 3, 2]
            assert client.get("/health").status_code == 200
            # Another credential has its own budget
            response = client.post("/thread", headers=KEY_B)
            assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_rate_limited(self, tmp_path):
        settings = make_settings(tmp_path, requests_per_minute=1000, requests_per_hour=2)
        with TestClient(create_app(settings)) as client:
            client.post("/thread", headers=KEY_A)
            client.post("/thread", headers=KEY_A)
            response = client.post("/thread", headers=KEY_A)

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["resetAt"] == int(response.headers["X-RateLimit-Reset"])
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert 0 <= int(response.headers["Retry-After"]) <= 3600

    def test_session_ceiling(self, tmp_path):
        settings = make_settings(tmp_path, max_active_sessions=1)
        with TestClient(create_app(settings)) as client:
            assert client.post("/thread", headers=KEY_A).status_code == 201
            response = client.post("/thread", headers=KEY_A)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"


class TestSettingsAndValidator:
    def test_credentials(self):
        settings = ServerSettings(api_keys=" a=cred_1 ,b=cred_2,, ")
        assert settings.credentials() == {"a": "cred_1", "b": "cred_2"}

    @pytest.mark.parametrize("raw", ["no-separator", "=cred", "key="])
    def test_malformed_credentials(self, raw):
        with pytest.raises(ValueError):
            ServerSettings(api_keys=raw).credentials()

    def test_env(self, monkeypatch):
        monkeypatch.setenv("THREADLINE_PORT", "9001")
        monkeypatch.setenv("THREADLINE_API_KEYS", "k=c")
        monkeypatch.setenv("THREADLINE_RESPONDER", "none")
        settings = ServerSettings()
        assert settings.port == 9001
        assert settings.credentials() == {"k": "c"}
        assert settings.responder == "none"

    def test_to_config(self):
        config = ServerSettings(
            db_path="/tmp/x.db", requests_per_minute=7, inactivity_timeout_seconds=60
        ).to_config()
        assert config.store.db_path == "/tmp/x.db"
        assert config.rate_limit.requests_per_minute == 7
        assert config.session.inactivity_timeout_seconds == 60

    def test_static_key_validator(self):
        validator = StaticKeyValidator({"k1": "cred_1", "k2": "cred_2"})
        assert validator.validate("k2") == "cred_2"
        for bad in (None, "", "k3"):
            with pytest.raises(UnauthorizedError):
                validator.validate(bad)
