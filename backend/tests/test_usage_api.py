"""Usage API routes — auth, validation, rate limiting and error mapping.

Runs the real app with the engine dependency bound to the in-memory store;
the lifespan (Mongo indexes) is not entered. The SSE route is driven over
raw ASGI so the client can hang up mid-stream.
"""
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import asyncio
import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from abuse.rate_limit import RATE_LIMIT_CONFIGS, check_rate_limit, usage_ping_config, user_key
import api.usage as usage_api
from api.usage import get_engine
from auth.tokens import generate_token
from schemas.usage import iso
from server import app
from usage.engine import UsageSessionEngine
from usage.notifier import ConnectionState, UsageStream

from fakes import FakeClock, InMemorySessionStore, T0, make_settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = InMemorySessionStore()
    s.add_user(
        "u1",
        email="u1@example.com",
        subscription_status="active",
        subscription_period_end=T0 + timedelta(days=20),
        session_limit_minutes=180,
    )
    s.add_user("late", subscription_status="past_due", session_limit_minutes=180)
    return s


@pytest.fixture
def client(store, clock):
    engine = UsageSessionEngine(store, settings=make_settings(USAGE_TTL_S=180), clock=clock)
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def _auth(user_id="u1"):
    return {"Authorization": f"Bearer {generate_token(user_id, email=f'{user_id}@example.com')}"}


class TestPing:

    def test_requires_auth(self, client, store):
        res = client.post("/api/usage/ping", json={"active": True})

        assert res.status_code == 401
        assert res.json() == {"error": "Authentication required", "code": "AUTH_ERROR"}
        assert store.rows == {}

    def test_rejects_non_boolean_active(self, client, store):
        for body in ({"active": "true"}, {"active": 1}, {}, [True]):
            res = client.post("/api/usage/ping", json=body, headers=_auth())
            assert res.status_code == 400, body
            assert res.json()["code"] == "INVALID_REQUEST"
        assert store.rows == {}

    def test_rejects_malformed_json(self, client):
        res = client.post(
            "/api/usage/ping",
            content=b"{not json",
            headers={**_auth(), "Content-Type": "application/json"},
        )
        assert res.status_code == 400
        assert res.json()["error"] == "Invalid request: body must be JSON"

    def test_start_heartbeat_stop(self, client, clock):
        started = client.post("/api/usage/ping", json={"active": True}, headers=_auth()).json()
        assert started["status"] == "active"
        assert started["current_session_seconds"] == 0
        assert started["time_remaining_seconds"] == 10800
        assert started["started_at"] == iso(T0)
        assert started["expires_at"] == iso(T0 + timedelta(seconds=180))
        assert started["cap_at"] == iso(T0 + timedelta(minutes=180))

        clock.advance(30)
        beat = client.post("/api/usage/ping", json={"active": True}, headers=_auth()).json()
        assert beat["session_id"] == started["session_id"]
        assert beat["current_session_seconds"] == 30

        stopped = client.post("/api/usage/ping", json={"active": False}, headers=_auth()).json()
        assert stopped["status"] == "closed"
        assert stopped["total_usage_seconds"] == 30
        assert stopped["totals"] == {"total_seconds": 30}

        again = client.post("/api/usage/ping", json={"active": True}, headers=_auth()).json()
        assert again["session_id"] != started["session_id"]

    def test_rate_limited_per_user(self, client, store):
        config = usage_ping_config()
        for _ in range(config.max_attempts):
            check_rate_limit(user_key("u1"), config)

        res = client.post("/api/usage/ping", json={"active": True}, headers=_auth())

        assert res.status_code == 429
        assert res.json()["code"] == "RATE_LIMITED"
        assert int(res.headers["Retry-After"]) >= 1
        assert store.rows == {}

        other = client.post("/api/usage/ping", json={"active": True}, headers=_auth("late"))
        assert other.status_code == 200

    def test_failed_close_is_a_server_error(self, client, store):
        client.post("/api/usage/ping", json={"active": True}, headers=_auth())
        store.fail_on.add("update_where")

        res = client.post("/api/usage/ping", json={"active": False}, headers=_auth())

        assert res.status_code == 500
        assert res.json()["code"] == "SESSION_CLOSE_FAILED"

    def test_unknown_user(self, client):
        res = client.post("/api/usage/ping", json={"active": True}, headers=_auth("ghost"))
        assert res.status_code == 500
        assert res.json() == {"error": "Failed to fetch user data", "code": "USER_NOT_FOUND"}

    def test_account_store_outage_keeps_its_code(self, client, store):
        store.fail_on.add("get_user")

        res = client.post("/api/usage/ping", json={"active": True}, headers=_auth())

        assert res.status_code == 500
        assert res.json()["code"] == "STORE_ERROR"
        assert store.rows == {}


class TestStream:

    def test_requires_auth(self, client):
        res = client.get("/api/usage/stream")
        assert res.status_code == 401

    def test_rate_limited_per_client(self, client, store):
        config = RATE_LIMIT_CONFIGS["API"]
        for _ in range(config.max_attempts):
            check_rate_limit("ip:testclient", config)

        res = client.get("/api/usage/stream", headers=_auth())

        assert res.status_code == 429
        assert store.subscriber_count == 0

    def test_locked_client(self, client):
        for _ in range(5):
            client.get("/api/usage/stream", headers={"Authorization": "Bearer nope"})

        res = client.get("/api/usage/stream", headers=_auth())

        assert res.status_code == 429
        assert res.json()["code"] == "ACCOUNT_LOCKED"
        assert "Retry-After" in res.headers


@pytest.fixture
def opened_streams(store, clock, monkeypatch):
    """Binds the engine for raw ASGI calls and records every UsageStream the route opens."""
    engine = UsageSessionEngine(store, settings=make_settings(USAGE_TTL_S=180), clock=clock)
    opened = []

    class RecordingStream(UsageStream):
        async def open(self):
            opened.append(self)
            await super().open()

    monkeypatch.setattr(usage_api, "UsageStream", RecordingStream)
    app.dependency_overrides[get_engine] = lambda: engine
    yield opened
    app.dependency_overrides.clear()


async def _stream_until_first_event(user_id="u1"):
    """GET /api/usage/stream over ASGI; the client hangs up after the first data frame."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/api/usage/stream",
        "raw_path": b"/api/usage/stream",
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"authorization", _auth(user_id)["Authorization"].encode()),
        ],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    hung_up = asyncio.Event()
    request_sent = False
    messages = []

    async def receive():
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await hung_up.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)
        if message["type"] == "http.response.body" and message.get("body", b"").startswith(b"data: "):
            hung_up.set()

    await asyncio.wait_for(app(scope, receive, send), timeout=5)
    return messages


def _first_event(messages):
    for message in messages:
        body = message.get("body", b"")
        if message["type"] == "http.response.body" and body.startswith(b"data: "):
            return json.loads(body[len(b"data: "):])
    raise AssertionError("no data frame sent")


@pytest.mark.asyncio
class TestStreamConnection:

    async def test_sse_headers_and_initial_snapshot(self, opened_streams):
        messages = await _stream_until_first_event()

        start = messages[0]
        headers = {k.decode(): v.decode() for k, v in start["headers"]}
        assert start["status"] == 200
        assert headers["content-type"].startswith("text/event-stream")
        assert headers["cache-control"].startswith("no-cache")
        assert headers["x-accel-buffering"] == "no"

        event = _first_event(messages)
        assert event["type"] == "usage:updated"
        assert event["status"] == "idle"
        assert event["timeRemainingSeconds"] == 10800

    async def test_active_session_streams_heartbeat(self, opened_streams, store, clock):
        engine = app.dependency_overrides[get_engine]()
        started = await engine.ping("u1", True)
        clock.advance(40)

        event = _first_event(await _stream_until_first_event())

        assert event["type"] == "session:heartbeat"
        assert event["sessionId"] == started.session_id
        assert event["currentSessionSeconds"] == 40

    async def test_disconnect_runs_full_teardown(self, opened_streams, store, caplog):
        caplog.set_level("INFO", logger="usage.notifier")

        await _stream_until_first_event()

        assert len(opened_streams) == 1
        stream = opened_streams[0]
        assert stream.state == ConnectionState.CLOSED
        assert stream._tasks == []
        assert stream._subscription is None
        assert store.subscriber_count == 0
        assert caplog.text.count("Usage stream closed: user=u1") == 1


class TestSessionData:

    def test_idle_account(self, client):
        data = client.get("/api/usage/session-data", headers=_auth()).json()

        assert data["user"]["id"] == "u1"
        assert data["user"]["email"] == "u1@example.com"
        assert data["user"]["subscription_status"] == "active"
        assert data["user"]["subscription_period_end"] == iso(T0 + timedelta(days=20))
        assert data["active_session"] is None
        assert data["session_limit_minutes"] == 180
        assert data["is_valid_subscription"] is True
        assert data["total_usage_seconds"] == 0
        assert data["time_remaining_seconds"] == 10800
        assert data["is_session_expired"] is False

    def test_with_active_session(self, client, clock):
        started = client.post("/api/usage/ping", json={"active": True}, headers=_auth()).json()
        clock.advance(125)

        data = client.get("/api/usage/session-data", headers=_auth()).json()

        assert data["active_session"]["id"] == started["session_id"]
        assert data["active_session"]["status"] == "active"
        assert data["active_session"]["max_end_at"] == started["cap_at"]
        assert data["total_usage_seconds"] == 125
        assert data["total_usage_minutes"] == 2

    def test_past_due_account_has_no_allowance(self, client):
        data = client.get("/api/usage/session-data", headers=_auth("late")).json()

        assert data["session_limit_minutes"] == 0
        assert data["is_valid_subscription"] is False
        assert data["requires_subscription_attention"] is True
        assert "past due" in data["subscription_message"]
        assert data["has_cancelled_access"] is False


class TestHealth:

    def test_health(self, client):
        res = client.get("/api/health")
        body = res.json()

        assert res.status_code == 200
        assert body["status"] == "healthy"
        assert set(body["guards"]) == {"rate_limits", "lockouts"}

    def test_head_health(self, client):
        assert client.head("/api/health").status_code == 200
