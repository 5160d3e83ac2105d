"""HTTP surface tests against an app bound to temporary directories."""

import json
import re
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from keygate.claude_auth import ClaudeAuthStore
from keygate.engine import CompletionEngine, EngineChunk
from keygate.errors import CompletionError
from keygate.main import create_app

KEY_PATTERN = re.compile(r"^sk-[A-Za-z0-9_-]{20}T3BlbkFJ[A-Za-z0-9_-]{20}$")
TOKEN_A = "sk-ant-oat01-" + "a" * 40 + "AAAA"
TOKEN_B = "sk-ant-oat01-" + "b" * 40 + "BBBB"
TOKEN_C = "sk-ant-oat01-" + "c" * 40 + "CCCC"
CHAT_BODY = {"model": "gpt-4", "messages": [{"role": "user", "content": "Hello"}]}


def _exchange(client, token, name="app"):
    resp = client.post("/auth/exchange", json={"oauthToken": token, "keyName": name})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _auth(api_key):
    return {"Authorization": f"Bearer {api_key}"}


def _sse_events(body):
    return [line[len("data: "):] for line in body.split("\n\n") if line.startswith("data: ")]


class FailingEngine(CompletionEngine):
    name = "failing"

    def __init__(self, exc):
        self.exc = exc

    async def stream(self, prompt, model, oauth_token):
        yield EngineChunk(text="partial")
        raise self.exc


def test_root_redirects_to_auth(client):
    resp = client.get("/", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/auth"


def test_login_flow(client):
    assert client.get("/auth").json() == {"authenticated": False}

    resp = client.post("/auth/login", json={"adminPassword": "nope"})
    assert resp.status_code == 401
    assert resp.json()["error"] == {
        "message": "Invalid admin password",
        "type": "authentication_error",
        "code": "invalid_password",
    }

    resp = client.post("/auth/login", json={"adminPassword": "test-admin-password"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["hasExistingKeys"] is False
    assert resp.json()["redirectTo"] == "/auth/exchange"
    assert "sessionToken" in resp.cookies
    assert "sessionHash" in resp.cookies
    assert "httponly" in resp.headers["set-cookie"].lower()

    assert client.get("/auth").json() == {"authenticated": True}

    resp = client.get("/auth/logout", follow_redirects=False)
    assert resp.status_code == 302
    assert client.get("/auth").json() == {"authenticated": False}


def test_session_required_for_exchange_and_admin(client):
    for method, path in [("get", "/auth/exchange"), ("post", "/auth/exchange"), ("get", "/admin/keys")]:
        resp = getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_expired"


def test_forged_session_is_rejected_and_cleared(client):
    client.cookies.set("sessionToken", "a" * 64)
    client.cookies.set("sessionHash", "b" * 64)
    resp = client.get("/admin/keys")
    assert resp.status_code == 401
    set_cookie = resp.headers.get("set-cookie", "").lower()
    assert "sessiontoken=" in set_cookie
    assert "max-age=0" in set_cookie


def test_exchange_validates_token_format(admin_client):
    resp = admin_client.post("/auth/exchange", json={"oauthToken": "not-a-token"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_token_format"
    resp = admin_client.post("/auth/exchange", json={})
    assert resp.status_code == 400


def test_exchange_issues_active_key(admin_client, claude_home):
    body = _exchange(admin_client, TOKEN_A, "laptop")
    assert KEY_PATTERN.match(body["apiKey"])
    assert body["keyName"] == "laptop"
    assert body["isActive"] is True
    assert body["externallyActive"] is True

    store = ClaudeAuthStore(claude_home)
    assert store.get_active_token() == TOKEN_A

    summary = admin_client.get("/auth/exchange").json()
    assert summary["activeTokenSuffix"] == "AAAA"
    assert [key["keyName"] for key in summary["keys"]] == ["laptop"]

    # First active credential wins externally; the registry still switches.
    second = _exchange(admin_client, TOKEN_B, "server")
    assert second["externallyActive"] is False
    assert store.get_active_token() == TOKEN_A

    resp = admin_client.get("/v1/models", headers=_auth(body["apiKey"]))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_api_key"
    assert admin_client.get("/v1/models", headers=_auth(second["apiKey"])).status_code == 200


def test_v1_requires_api_key(client):
    resp = client.get("/v1/models")
    assert resp.status_code == 401
    assert resp.json()["error"] == {
        "message": "Invalid authorization header. Expected: Bearer <api_key>",
        "type": "invalid_request_error",
        "code": "invalid_auth_header",
    }
    resp = client.get("/v1/models", headers=_auth("sk-bogus"))
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "invalid_api_key"


def test_rejected_v1_requests_carry_rate_limit_headers(admin_client):
    resp = admin_client.get("/v1/models")
    assert resp.status_code == 401
    assert resp.headers["X-RateLimit-Limit"] == "100"
    assert resp.headers["X-RateLimit-Remaining"] == "99"
    assert "X-RateLimit-Reset" in resp.headers

    api_key = _exchange(admin_client, TOKEN_A)["apiKey"]
    resp = admin_client.post(
        "/v1/chat/completions", json={"model": "gpt-4", "messages": []}, headers=_auth(api_key)
    )
    assert resp.status_code == 400
    assert resp.headers["X-RateLimit-Remaining"] == "99"

    resp = admin_client.post("/v1/chat/completions", json={"messages": "oops"}, headers=_auth(api_key))
    assert resp.status_code == 400
    assert resp.headers["X-RateLimit-Remaining"] == "98"


def test_engine_failure_carries_rate_limit_headers(settings):
    app = create_app(settings, engine=FailingEngine(CompletionError("engine crashed")))
    with TestClient(app) as client:
        client.post("/auth/login", json={"adminPassword": "test-admin-password"})
        api_key = _exchange(client, TOKEN_A)["apiKey"]
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers=_auth(api_key))
        assert resp.status_code == 500
        assert resp.headers["X-RateLimit-Limit"] == "100"


def test_models_and_health(admin_client):
    api_key = _exchange(admin_client, TOKEN_A)["apiKey"]
    resp = admin_client.get("/v1/models", headers=_auth(api_key))
    assert resp.status_code == 200
    assert resp.json()["object"] == "list"
    assert {model["id"] for model in resp.json()["data"]} == {"gpt-4", "gpt-3.5-turbo", "sonnet", "opus", "haiku"}
    assert resp.headers["X-RateLimit-Limit"] == "100"
    assert resp.headers["X-RateLimit-Remaining"] == "99"
    assert int(resp.headers["X-RateLimit-Reset"]) > 0

    health = admin_client.get("/v1/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["timestamp"].endswith("Z")


def test_chat_completion_updates_last_used(admin_client):
    api_key = _exchange(admin_client, TOKEN_A)["apiKey"]
    assert admin_client.get("/admin/keys").json()["keys"][0]["lastUsed"] is None

    resp = admin_client.post("/v1/chat/completions", json=CHAT_BODY, headers=_auth(api_key))
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["object"] == "chat.completion"
    assert payload["model"] == "gpt-4"
    assert payload["choices"][0]["message"]["content"].startswith("Offline response (")
    assert payload["usage"]["total_tokens"] == payload["usage"]["prompt_tokens"] + payload["usage"]["completion_tokens"]

    assert admin_client.get("/admin/keys").json()["keys"][0]["lastUsed"] is not None


def test_chat_completion_requires_messages(admin_client):
    api_key = _exchange(admin_client, TOKEN_A)["apiKey"]
    resp = admin_client.post("/v1/chat/completions", json={"model": "gpt-4", "messages": []}, headers=_auth(api_key))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_messages"

    resp = admin_client.post("/v1/chat/completions", json={"messages": "oops"}, headers=_auth(api_key))
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "invalid_request_error"


def test_streaming_chat_completion(admin_client):
    api_key = _exchange(admin_client, TOKEN_A)["apiKey"]
    resp = admin_client.post(
        "/v1/chat/completions", json={**CHAT_BODY, "stream": True}, headers=_auth(api_key)
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["X-RateLimit-Limit"] == "100"

    events = _sse_events(resp.text)
    assert events[-1] == "[DONE]"
    chunks = [json.loads(event) for event in events[:-1]]
    assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
    text = "".join(chunk["choices"][0]["delta"].get("content", "") for chunk in chunks)
    assert text.startswith("Offline response (")

    assert admin_client.get("/admin/keys").json()["keys"][0]["lastUsed"] is not None


def test_stream_failure_emits_error_event(settings):
    app = create_app(settings, engine=FailingEngine(CompletionError("engine crashed")))
    with TestClient(app) as client:
        client.post("/auth/login", json={"adminPassword": "test-admin-password"})
        api_key = _exchange(client, TOKEN_A)["apiKey"]
        resp = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True}, headers=_auth(api_key))
        events = _sse_events(resp.text)
        assert "[DONE]" not in events
        error = json.loads(events[-1])["error"]
        assert error["code"] == "stream_error"
        assert error["message"] == "engine crashed"
        assert client.get("/admin/keys").json()["keys"][0]["lastUsed"] is None


def test_engine_failure_non_streaming(settings):
    app = create_app(settings, engine=FailingEngine(CompletionError("engine crashed")))
    with TestClient(app) as client:
        client.post("/auth/login", json={"adminPassword": "test-admin-password"})
        api_key = _exchange(client, TOKEN_A)["apiKey"]
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers=_auth(api_key))
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "completion_failed"


def test_unexpected_error_returns_internal_error(settings):
    app = create_app(settings, engine=FailingEngine(RuntimeError("boom")))
    with TestClient(app, raise_server_exceptions=False) as client:
        client.post("/auth/login", json={"adminPassword": "test-admin-password"})
        api_key = _exchange(client, TOKEN_A)["apiKey"]
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers=_auth(api_key))
        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "message": "An unexpected error occurred",
            "type": "api_error",
            "code": "internal_error",
        }


def test_rate_limit_rejects_with_headers(settings):
    with TestClient(create_app(replace(settings, rate_limit=2))) as client:
        assert client.get("/v1/health").status_code == 200
        assert client.get("/v1/health").headers["X-RateLimit-Remaining"] == "0"
        resp = client.get("/v1/health")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limit_exceeded"
        assert resp.json()["error"]["type"] == "rate_limit_error"
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

        # Each bearer token has its own budget.
        other = client.get("/v1/health", headers=_auth("sk-someone-else"))
        assert other.status_code == 200


def test_admin_overview_and_orphaned_token(admin_client, claude_home):
    _exchange(admin_client, TOKEN_A, "first")
    overview = admin_client.get("/admin").json()
    assert overview["activeTokenSuffix"] == "AAAA"
    assert overview["orphanedActiveToken"] is False
    assert len(overview["keys"]) == 1
    assert "apiKey" not in overview["keys"][0]

    store = ClaudeAuthStore(claude_home)
    store.clear_active_token()
    store.activate_token(TOKEN_C)
    overview = admin_client.get("/admin/keys").json()
    assert overview["activeTokenSuffix"] == "CCCC"
    assert overview["orphanedActiveToken"] is True


def test_admin_activate_switches_external_token(admin_client, claude_home):
    first = _exchange(admin_client, TOKEN_A, "first")["apiKey"]
    _exchange(admin_client, TOKEN_B, "second")
    keys = admin_client.get("/admin/keys").json()["keys"]
    first_id = next(key["keyId"] for key in keys if key["keyName"] == "first")

    resp = admin_client.post(f"/admin/keys/{first_id}/activate")
    assert resp.status_code == 200
    assert resp.json()["key"]["keyName"] == "first"
    assert resp.json()["externallyActive"] is True
    assert admin_client.get("/v1/models", headers=_auth(first)).status_code == 200
    assert ClaudeAuthStore(claude_home).get_active_token() == TOKEN_A

    second_id = next(key["keyId"] for key in keys if key["keyName"] == "second")
    resp = admin_client.post(f"/admin/keys/{second_id}/activate")
    assert resp.json()["externallyActive"] is True
    assert ClaudeAuthStore(claude_home).get_active_token() == TOKEN_B

    assert admin_client.post("/admin/keys/unknown/activate").status_code == 404


def test_admin_delete_key(admin_client):
    _exchange(admin_client, TOKEN_A)
    key_id = admin_client.get("/admin/keys").json()["keys"][0]["keyId"]

    resp = admin_client.delete("/admin/keys/not-a-key")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "key_not_found"

    resp = admin_client.delete(f"/admin/keys/{key_id}")
    assert resp.status_code == 200
    assert resp.json() == {"message": "API key deleted successfully"}
    assert admin_client.get("/admin/keys").json()["keys"] == []


def test_admin_deactivate_all_and_clear_token(admin_client, claude_home):
    api_key = _exchange(admin_client, TOKEN_A)["apiKey"]

    resp = admin_client.post("/admin/deactivate-all")
    assert resp.json() == {"success": True, "deactivated": 1}
    assert admin_client.get("/v1/models", headers=_auth(api_key)).status_code == 401

    resp = admin_client.post("/admin/clear-active-token")
    assert resp.json() == {"success": True, "cleared": True}
    assert ClaudeAuthStore(claude_home).get_active_token_suffix() is None
    assert admin_client.post("/admin/clear-active-token").json()["cleared"] is False


def test_admin_debug_and_metrics(admin_client):
    _exchange(admin_client, TOKEN_A, "dbg")
    admin_client.get("/v1/models", headers=_auth("sk-bogus"))

    debug = admin_client.get("/admin/debug/claude-auth").json()
    assert debug["activeTokenSuffix"] == "AAAA"
    assert debug["activeTokenFound"] is True
    assert debug["keys"] == [{"name": "dbg", "tokenSuffix": "AAAA", "isActive": True}]
    assert debug["files"]["credentialsExists"] is True

    metrics = admin_client.get("/admin/metrics")
    assert metrics.status_code == 200
    assert "keygate_auth_failures_total" in metrics.text
    assert "keygate_registry_mutations_total" in metrics.text


def test_unknown_route_and_cors(client):
    resp = client.get("/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "endpoint_not_found"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"

    preflight = client.options("/v1/chat/completions")
    assert preflight.status_code == 200
    assert preflight.headers["Access-Control-Allow-Methods"] == "GET, POST, PUT, DELETE, OPTIONS"
    assert preflight.headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization"


def test_production_requires_https(production_settings):
    with TestClient(create_app(production_settings)) as client:
        resp = client.get("/auth", follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"] == "https://testserver/auth"

        resp = client.get("/auth", headers={"X-Forwarded-Proto": "https"})
        assert resp.status_code == 200

        resp = client.post(
            "/auth/login",
            json={"adminPassword": "test-admin-password"},
            headers={"X-Forwarded-Proto": "https"},
        )
        assert resp.status_code == 200
        assert "secure" in resp.headers["set-cookie"].lower()


def test_startup_reconciles_external_token(settings, claude_home):
    ClaudeAuthStore(claude_home).activate_token(TOKEN_C)
    with TestClient(create_app(settings)) as client:
        client.post("/auth/login", json={"adminPassword": "test-admin-password"})
        keys = client.get("/admin/keys").json()
        assert keys["orphanedActiveToken"] is False
        assert [key["keyName"] for key in keys["keys"]] == ["imported"]
        assert keys["keys"][0]["isActive"] is True
