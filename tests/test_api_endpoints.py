"""
API Endpoint Tests

Exercise the FastAPI surface with TestClient while the Qwen portal and token
endpoint are mocked with respx.
"""

import json

import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from relay_app.app import MODEL_CREATED, create_app
from relay_app.settings import RelaySettings
from tests.fixtures.upstream_mocks import (
    CHAT_URL,
    TOKEN_URL,
    completion_body,
    hello_world_stream,
    parse_sse_frames,
)


def make_settings(credentials_path, **overrides) -> RelaySettings:
    overrides.setdefault("check_interval_ms", 0)
    return RelaySettings(credentials_path=credentials_path, **overrides)


@pytest.fixture
def client(credentials_path):
    return TestClient(create_app(make_settings(credentials_path)))


@pytest.fixture
def chat_request(sample_messages):
    return {"model": "qwen3-coder-plus", "messages": sample_messages}


class TestBasicEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json() == {"Status": "Qwen OAuth relay is running"}

    def test_models_catalog(self, client):
        response = client.get("/v1/models")
        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "list"
        assert [m["id"] for m in data["data"]] == ["qwen3-coder-plus", "qwen3-coder-flash"]
        assert all(m["owned_by"] == "qwen" for m in data["data"])
        assert all(m["created"] == MODEL_CREATED for m in data["data"])

    def test_models_include_configured_default(self, credentials_path):
        client = TestClient(
            create_app(make_settings(credentials_path, default_model="qwen3-max"))
        )
        ids = [m["id"] for m in client.get("/v1/models").json()["data"]]
        assert ids == ["qwen3-coder-plus", "qwen3-coder-flash", "qwen3-max"]


class TestHealth:
    def test_missing_credentials(self, client):
        with respx.mock(assert_all_called=False) as mock:
            token = mock.post(TOKEN_URL)
            response = client.get("/health")

        assert token.call_count == 0
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["token_available"] is False
        assert data["token_expires"] is None
        assert data["token_state"] == "missing"
        assert data["api_base"] == "https://portal.qwen.ai/v1"
        assert data["session_id"]
        assert data["server_time"]

    def test_with_credentials(self, client, write_credentials):
        write_credentials(expires_in=3600)
        data = client.get("/health").json()

        assert data["token_available"] is True
        assert data["token_state"] == "valid"
        assert data["token_expires"].endswith("+00:00")


class TestChatCompletions:
    def test_missing_credentials_return_500_without_network(self, client, chat_request):
        with respx.mock(assert_all_called=False) as mock:
            chat = mock.post(CHAT_URL)
            token = mock.post(TOKEN_URL)
            response = client.post("/v1/chat/completions", json=chat_request)

        assert chat.call_count == 0
        assert token.call_count == 0
        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "no_credentials"
        assert "Qwen CLI" in error["message"]

    def test_invalid_json_returns_400(self, client):
        response = client.post(
            "/v1/chat/completions",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"

    @pytest.mark.parametrize("messages", [5, "hello", {"role": "user"}])
    def test_non_array_messages_return_400(self, client, messages):
        response = client.post(
            "/v1/chat/completions", json={"model": "m", "messages": messages}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["type"] == "invalid_request_error"
        assert "messages" in error["message"]

    def test_buffered_completion(self, client, write_credentials, chat_request):
        write_credentials()

        with respx.mock() as mock:
            mock.post(CHAT_URL).return_value = httpx.Response(200, json=completion_body("Hi"))
            response = client.post("/v1/chat/completions", json=chat_request)

        assert response.status_code == 200
        body = response.json()
        assert body["object"] == "chat.completion"
        assert body["choices"][0]["message"]["content"] == "Hi"

    def test_streaming_completion(self, client, write_credentials, chat_request):
        write_credentials()
        chat_request["stream"] = True

        with respx.mock() as mock:
            mock.post(CHAT_URL).return_value = httpx.Response(
                200,
                content=hello_world_stream(),
                headers={"content-type": "text/event-stream"},
            )
            response = client.post("/v1/chat/completions", json=chat_request)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        frames = parse_sse_frames(response.text)
        assert frames[-1] == "[DONE]"
        assert len({json.loads(f)["id"] for f in frames[:-1]}) == 1

    def test_rate_limit_passthrough(self, client, write_credentials, chat_request):
        write_credentials()

        with respx.mock() as mock:
            mock.post(CHAT_URL).return_value = httpx.Response(
                429, json={"error": {"message": "quota"}}, headers={"Retry-After": "12"}
            )
            response = client.post("/v1/chat/completions", json=chat_request)

        assert response.status_code == 429
        assert response.headers["retry-after"] == "12"
        assert response.json() == {"error": {"message": "quota"}}


class TestRouterKey:
    @pytest.fixture
    def secured_client(self, credentials_path):
        return TestClient(create_app(make_settings(credentials_path, router_api_key="secret")))

    def test_missing_key_is_rejected(self, secured_client, chat_request):
        response = secured_client.post("/v1/chat/completions", json=chat_request)
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["type"] == "authentication_error"
        assert error["code"] == "invalid_api_key"

    def test_wrong_key_is_rejected(self, secured_client, chat_request):
        response = secured_client.post(
            "/v1/chat/completions",
            json=chat_request,
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401

    def test_correct_key_is_accepted(self, secured_client, chat_request):
        response = secured_client.post(
            "/v1/chat/completions",
            json=chat_request,
            headers={"Authorization": "Bearer secret"},
        )
        # Past the key check; fails later because no credential file exists
        assert response.status_code == 500

    @pytest.mark.parametrize("header", ["bearer secret", "Bearer  secret", "Token secret"])
    def test_key_is_compared_without_the_scheme(self, secured_client, chat_request, header):
        response = secured_client.post(
            "/v1/chat/completions", json=chat_request, headers={"Authorization": header}
        )
        assert response.status_code == 500

    def test_key_without_scheme_is_rejected(self, secured_client, chat_request):
        response = secured_client.post(
            "/v1/chat/completions", json=chat_request, headers={"Authorization": "secret"}
        )
        assert response.status_code == 401

    def test_health_and_models_are_open(self, secured_client):
        assert secured_client.get("/health").status_code == 200
        assert secured_client.get("/v1/models").status_code == 200


class TestLifespan:
    def test_background_refresher_runs_for_app_lifetime(self, credentials_path, write_credentials):
        write_credentials(expires_in=3600)
        app = create_app(make_settings(credentials_path, check_interval_ms=60_000))

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
            assert app.state.background_refresher.running

        assert not app.state.background_refresher.running

    def test_startup_with_missing_credentials_does_not_fail(self, credentials_path):
        app = create_app(make_settings(credentials_path))

        with TestClient(app) as client:
            assert client.get("/health").json()["token_available"] is False
