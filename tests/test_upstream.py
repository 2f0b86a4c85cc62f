import json

import httpx
import pytest

from relay.models import PromptMessage
from relay.settings import Settings
from relay.upstream import (
    FALLBACK_MESSAGE,
    RATE_LIMITED_MESSAGE,
    FlowiseBackend,
    OpenAIChatBackend,
    UpstreamAIError,
    build_ai_backend,
)

PROMPT = [
    PromptMessage(role="user", content="hello"),
    PromptMessage(role="assistant", content="hi there"),
    PromptMessage(role="user", content="how are you"),
]


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _openai(client: httpx.AsyncClient) -> OpenAIChatBackend:
    return OpenAIChatBackend(
        client, api_key="sk-test", model="gpt-test", base_url="https://ai.example/v1/"
    )


@pytest.mark.asyncio
async def test_openai_sends_full_window_and_strips_leading_blank_lines():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"choices": [{"message": {"content": "\n\nFine, thanks.\n\nYou?"}}]}
        )

    async with _client(handler) as client:
        reply = await _openai(client).ask("how are you", "c1u1", PROMPT)

    assert reply.text == "Fine, thanks.\n\nYou?"
    assert reply.session_id is None
    assert captured["url"] == "https://ai.example/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"]["model"] == "gpt-test"
    assert captured["body"]["messages"] == [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "hi there"},
        {"role": "user", "content": "how are you"},
    ]


@pytest.mark.asyncio
async def test_rate_limit_maps_to_dedicated_user_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    async with _client(handler) as client:
        with pytest.raises(UpstreamAIError) as exc_info:
            await _openai(client).ask("q", "s", PROMPT)

    assert exc_info.value.status_code == 429
    assert exc_info.value.user_message == RATE_LIMITED_MESSAGE


@pytest.mark.asyncio
async def test_server_error_maps_to_fallback_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async with _client(handler) as client:
        with pytest.raises(UpstreamAIError) as exc_info:
            await _openai(client).ask("q", "s", PROMPT)

    assert exc_info.value.status_code == 500
    assert exc_info.value.text == "boom"
    assert exc_info.value.user_message == FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_timeout_maps_to_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with _client(handler) as client:
        with pytest.raises(UpstreamAIError) as exc_info:
            await _openai(client).ask("q", "s", PROMPT)

    assert exc_info.value.status_code is None
    assert exc_info.value.user_message == FALLBACK_MESSAGE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"choices": []},
        {"choices": [{"message": {}}]},
        {"choices": [{"message": {"content": ""}}]},
        {"choices": [{"message": {"content": "\n\n"}}]},
        {"unexpected": True},
    ],
)
async def test_openai_missing_content_is_an_error(body):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    async with _client(handler) as client:
        with pytest.raises(UpstreamAIError):
            await _openai(client).ask("q", "s", PROMPT)


@pytest.mark.asyncio
async def test_non_json_body_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>")

    async with _client(handler) as client:
        with pytest.raises(UpstreamAIError):
            await _openai(client).ask("q", "s", PROMPT)


def test_flowise_payload_modes():
    client = httpx.AsyncClient()
    override = FlowiseBackend(client, api_url="http://flowise/api")
    body = FlowiseBackend(client, api_url="http://flowise/api", session_mode="body")

    assert override.build_payload("hi", "c1u1") == {
        "question": "hi",
        "overrideConfig": {"sessionId": "c1u1"},
    }
    assert body.build_payload("hi", "c1u1") == {"question": "hi", "sessionId": "c1u1"}


@pytest.mark.asyncio
async def test_flowise_sends_question_only_and_reports_session():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"text": "answer", "sessionId": "flow-123"})

    async with _client(handler) as client:
        backend = FlowiseBackend(client, api_url="http://flowise/api", api_key="fw-key")
        reply = await backend.ask("how are you", "c1u1", PROMPT)

    assert reply.text == "answer"
    assert reply.session_id == "flow-123"
    assert captured["body"] == {
        "question": "how are you",
        "overrideConfig": {"sessionId": "c1u1"},
    }
    assert captured["auth"] == "Bearer fw-key"


@pytest.mark.asyncio
async def test_flowise_without_text_is_invalid():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"sessionId": "flow-123"})

    async with _client(handler) as client:
        backend = FlowiseBackend(client, api_url="http://flowise/api")
        with pytest.raises(UpstreamAIError, match="Invalid response from Flowise API"):
            await backend.ask("q", "s", PROMPT)


@pytest.mark.asyncio
async def test_flowise_ignores_blank_session_id():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"text": "answer", "sessionId": ""})

    async with _client(handler) as client:
        reply = await FlowiseBackend(client, api_url="http://flowise/api").ask("q", "s", PROMPT)

    assert reply.session_id is None


def test_build_ai_backend_selects_by_setting():
    client = httpx.AsyncClient()

    assert build_ai_backend(Settings(ai_backend="openai", openai_api_key="k"), client).name == "openai"
    assert (
        build_ai_backend(Settings(ai_backend="flowise", flowise_api_url="http://f"), client).name
        == "flowise"
    )
    with pytest.raises(ValueError):
        build_ai_backend(Settings(ai_backend="nope"), client)
