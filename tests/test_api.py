import pytest
from fastapi.testclient import TestClient

from chatrelay.agent.factory import build_orchestrator
from chatrelay.api.app import create_app
from chatrelay.config.schema import Config
from chatrelay.providers.base import GenerationError

from tests.conftest import ScriptedGenerator

API_KEY = "test-key"
AUTH = {"X-API-KEY": API_KEY}


def _make_client(make_handle, generator=None):
    config = Config()
    config.server.api_key = API_KEY
    handle, orchestrator = build_orchestrator(
        config, handle=make_handle(), generator=generator or ScriptedGenerator()
    )
    app = create_app(config, handle=handle, orchestrator=orchestrator)
    return TestClient(app), orchestrator


@pytest.fixture
def api(make_handle):
    client, orchestrator = _make_client(make_handle)
    with client:
        yield client, orchestrator


def test_health_needs_no_auth(api):
    client, _ = api
    assert client.get("/health").json() == {"status": "ok"}
    assert client.post("/health").json() == {"status": "ok"}


def test_chat_requires_api_key(api):
    client, _ = api
    resp = client.post("/chat", json={"message": "hi", "userId": "u1"})
    assert resp.status_code == 401
    assert resp.json()["error"] is True

    resp = client.post("/chat", json={"message": "hi", "userId": "u1"}, headers={"X-API-KEY": "wrong"})
    assert resp.status_code == 401


def test_chat_rejects_invalid_payloads(api):
    client, _ = api
    resp = client.post("/chat", content=b"not json", headers={**AUTH, "Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json() == {"error": True, "reason": "Invalid JSON payload"}

    resp = client.post("/chat", json={"message": "   ", "userId": "u1"}, headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["reason"] == 'Field "message" is required and must be a non-empty string'

    resp = client.post("/chat", json={"message": "hi"}, headers=AUTH)
    assert resp.status_code == 400
    assert "userId" in resp.json()["reason"]


def test_chat_without_streaming_returns_json(api):
    client, orchestrator = api
    resp = client.post("/chat?nostreaming", json={"message": "  hi  ", "userId": "u1"}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.json() == {"error": False, "reply": "Hello, world!"}

    client.portal.call(orchestrator.drain)
    history = client.get("/history", params={"userId": "u1"}, headers=AUTH).json()
    assert history["messages"] == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "Hello, world!"},
    ]
    assert history["ttl"] is not None


def test_chat_streams_plain_text(api):
    client, orchestrator = api
    resp = client.post(
        "/chat",
        json={"message": "hi", "userId": "u1", "domain": "billing", "category": "refunds"},
        headers=AUTH,
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "Hello, world!"

    client.portal.call(orchestrator.drain)
    history = client.get(
        "/history",
        params={"userId": "u1", "domain": "billing", "category": "refunds"},
        headers=AUTH,
    ).json()
    assert history["messages"][-1] == {"role": "assistant", "content": resp.text}


def test_stream_failure_is_reported_in_band(make_handle):
    generator = ScriptedGenerator(chunks=["a", "b", "c"], fail_stream_after=1)
    client, _ = _make_client(make_handle, generator)
    with client:
        resp = client.post("/chat", json={"message": "hi", "userId": "u1"}, headers=AUTH)

    assert resp.status_code == 200
    assert resp.text == "a\n[error] model went away"


def test_generation_failure_without_streaming_is_500(make_handle):
    generator = ScriptedGenerator(fail_generate=GenerationError("model down"))
    client, _ = _make_client(make_handle, generator)
    with client:
        resp = client.post("/chat?nostreaming", json={"message": "hi", "userId": "u1"}, headers=AUTH)

    assert resp.status_code == 500
    assert resp.json() == {"error": True, "reason": "model down"}


def test_store_outage_fails_before_streaming(api, server):
    client, _ = api
    server.connected = False
    resp = client.post("/chat", json={"message": "hi", "userId": "u1"}, headers=AUTH)

    assert resp.status_code == 500
    assert resp.json()["error"] is True


def test_clear_history(api):
    client, orchestrator = api
    for scope in ({"domain": "billing", "category": "refunds"}, {"domain": "support", "category": "general"}):
        client.post("/chat?nostreaming", json={"message": "hi", "userId": "u1", **scope}, headers=AUTH)
    client.portal.call(orchestrator.drain)

    resp = client.delete(
        "/history", params={"userId": "u1", "domain": "billing", "category": "refunds"}, headers=AUTH
    )
    assert resp.json() == {"error": False, "removed": 1}

    resp = client.delete("/history", params={"userId": "u1"}, headers=AUTH)
    assert resp.json() == {"error": False, "removed": 1}


def test_history_requires_user_id(api):
    client, _ = api
    resp = client.get("/history", headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["error"] is True


def test_separator_in_scope_is_rejected(api):
    client, orchestrator = api
    client.post("/chat?nostreaming", json={"message": "hi", "userId": "u1"}, headers=AUTH)
    client.portal.call(orchestrator.drain)

    resp = client.post("/chat", json={"message": "hi", "userId": "u1::evil"}, headers=AUTH)
    assert resp.status_code == 400
    assert resp.json() == {"error": True, "reason": 'Field "userId" must not contain ":"'}

    resp = client.delete("/history", params={"userId": "u1", "domain": "billing:eu"}, headers=AUTH)
    assert resp.status_code == 400
    assert resp.json()["reason"] == 'Field "domain" must not contain ":"'

    resp = client.get("/history", params={"userId": "u1:"}, headers=AUTH)
    assert resp.status_code == 400

    history = client.get("/history", params={"userId": "u1"}, headers=AUTH).json()
    assert len(history["messages"]) == 2
