import base64
from typing import List

import pytest
from fastapi.testclient import TestClient

from relay.context_store import InMemoryConversationStore
from relay.errors import StoreUnavailable
from relay.models import Turn
from relay.routes import create_app
from relay.settings import Settings
from relay.upstream import UpstreamAIError
from tests.utils import FakeBackend, RecordingReplier, make_relay, message_event

ADMIN_HEADERS = {"Authorization": "Bearer " + base64.b64encode(b"timeline").decode()}


def _settings(**overrides) -> Settings:
    values = dict(
        lark_app_id="cli_app",
        lark_app_secret="secret",
        openai_api_key="sk-test",
        lark_verification_token=None,
        admin_token="timeline",
    )
    values.update(overrides)
    return Settings(**values)


def _client(backend=None, settings=None, relay=None):
    replier = RecordingReplier()
    relay = relay or make_relay(backend or FakeBackend())
    app = create_app(settings or _settings(), relay=relay, replier=replier)
    return TestClient(app), relay, replier


def test_health_and_api_test():
    client, _, _ = _client()
    with client:
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/api/test").json() == {"message": "API is working"}


@pytest.mark.parametrize("path", ["/webhook", "/api/index"])
def test_url_verification_echoes_challenge(path):
    client, _, _ = _client()
    with client:
        resp = client.post(path, json={"type": "url_verification", "challenge": "abc123"})

    assert resp.status_code == 200
    assert resp.json() == {"challenge": "abc123"}


def test_url_verification_checks_token_when_configured():
    client, _, _ = _client(settings=_settings(lark_verification_token="vt"))
    with client:
        ok = client.post(
            "/webhook", json={"type": "url_verification", "challenge": "c", "token": "vt"}
        )
        bad = client.post(
            "/webhook", json={"type": "url_verification", "challenge": "c", "token": "nope"}
        )

    assert ok.json() == {"challenge": "c"}
    assert bad.status_code == 401
    assert bad.json()["detail"]["error"] == "unauthorized"


def test_event_with_wrong_verification_token_is_rejected():
    backend = FakeBackend()
    client, _, replier = _client(backend, settings=_settings(lark_verification_token="vt"))
    with client:
        resp = client.post("/webhook", json=message_event(token="wrong"))

    assert resp.status_code == 401
    assert backend.calls == []
    assert replier.sent == []


def test_encrypted_callback_is_refused():
    client, _, _ = _client()
    with client:
        resp = client.post("/webhook", json={"encrypt": "ciphertext"})

    assert resp.json() == {"code": 1, "message": "Encryption is enabled, please disable it."}


def test_headerless_body_reports_configuration():
    client, _, _ = _client()
    with client:
        assert client.post("/webhook", json={}).json() == {
            "code": 0,
            "message": "configuration is valid",
        }

    incomplete = _settings(lark_app_id="", lark_app_secret="", openai_api_key="")
    client, _, _ = _client(settings=incomplete)
    with client:
        body = client.post("/webhook", json={}).json()

    assert body == {"code": 1, "message": "Missing configuration: APPID, SECRET, KEY"}


def test_other_event_types_return_code_2():
    client, _, _ = _client()
    with client:
        resp = client.post("/webhook", json=message_event(event_type="im.chat.updated_v1"))

    assert resp.json() == {"code": 2}


def test_message_event_round_trip_and_duplicate():
    backend = FakeBackend("hi there")
    client, relay, replier = _client(backend)
    body = message_event(event_id="evt-42", text="@_user_1 hello")
    with client:
        first = client.post("/webhook", json=body)
        second = client.post("/webhook", json=body)

    assert first.json() == {"code": 0}
    assert second.json() == {"code": 1, "message": "Duplicate event"}
    assert replier.sent == [("om_1", "hi there")]
    assert len(backend.calls) == 1


def test_backend_failure_still_returns_code_0():
    backend = FakeBackend(UpstreamAIError(status_code=500, message="boom"))
    client, relay, replier = _client(backend)
    with client:
        resp = client.post("/webhook", json=message_event())

    assert resp.json() == {"code": 0}
    assert len(replier.sent) == 1


def test_malformed_event_returns_400():
    client, _, _ = _client()
    body = message_event()
    del body["header"]["event_id"]
    with client:
        resp = client.post("/webhook", json=body)

    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["error"] == "bad_request"
    assert detail["details"]["errors"]


def test_non_json_body_returns_400():
    client, _, _ = _client()
    with client:
        resp = client.post(
            "/webhook", content=b"not json", headers={"Content-Type": "application/json"}
        )

    assert resp.status_code == 400


class BrokenStore(InMemoryConversationStore):
    async def list_turns(self, session_id: str) -> List[Turn]:
        raise StoreUnavailable("redis", "connection refused")


def test_store_failure_returns_503():
    relay = make_relay(FakeBackend())
    relay.store = BrokenStore()
    client, _, _ = _client(relay=relay)
    with client:
        resp = client.post("/webhook", json=message_event())

    assert resp.status_code == 503
    assert resp.json()["detail"]["error"] == "service_unavailable"


def test_teams_webhook_returns_answer_in_body():
    backend = FakeBackend("teams answer")
    client, relay, replier = _client(backend)
    with client:
        resp = client.post("/teams-webhook", json={"text": "hello", "sessionId": "teams-1"})

    assert resp.status_code == 200
    assert resp.json() == {"message": "teams answer"}
    assert replier.sent == []
    assert backend.calls[0][1] == "teams-1"


def test_teams_webhook_failure_returns_500():
    backend = FakeBackend(UpstreamAIError(status_code=None, message="timeout"))
    client, _, _ = _client(backend)
    with client:
        resp = client.post("/teams-webhook", json={"text": "hello", "sessionId": "teams-1"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "Error processing request"}


def test_context_endpoints_require_admin_token():
    client, _, _ = _client()
    with client:
        assert client.get("/context/c1u1").status_code == 401
        bad = {"Authorization": "Bearer " + base64.b64encode(b"wrong").decode()}
        assert client.get("/context/c1u1", headers=bad).status_code == 401
        assert client.delete("/context/c1u1").status_code == 401


def test_context_inspect_and_clear():
    backend = FakeBackend("a1", "a2")
    client, relay, _ = _client(backend)
    with client:
        client.post("/webhook", json=message_event(event_id="e1", text="q1"))
        client.post("/webhook", json=message_event(event_id="e2", text="q2"))

        resp = client.get("/context/c1u1", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["session_id"] == "c1u1"
        assert [t["question"] for t in body["turns"]] == ["q1", "q2"]
        assert body["total_size"] == 8
        assert body["budget"] == 1024

        deleted = client.delete("/context/c1u1", headers=ADMIN_HEADERS)
        assert deleted.status_code == 204
        assert client.get("/context/c1u1", headers=ADMIN_HEADERS).json()["turns"] == []
