"""Tests for the OpenAI adapter against a mocked HTTP transport."""

import json
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from oneshot.exceptions import (
    AuthenticationError,
    ContextTooLargeError,
    InvalidParametersError,
    ModelNotAvailableError,
    NetworkError,
    NotConfiguredError,
    ProviderUnavailableError,
    RateLimitError,
)
from oneshot.services.llm_providers.openai_provider import OpenAIProvider
from oneshot.services.models.llm_models import LLMParameters, RequestState, TokenUsage

MODELS_BODY = {
    "object": "list",
    "data": [{"id": "gpt-4o", "object": "model", "created": 0, "owned_by": "openai"}],
}


def _chunk(content: Optional[str] = None, finish_reason: Optional[str] = None,
           usage: Optional[Dict[str, int]] = None) -> Dict:
    choices = []
    if content is not None or finish_reason is not None:
        delta = {"content": content} if content is not None else {}
        choices.append({"index": 0, "delta": delta, "finish_reason": finish_reason})
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-4o",
        "choices": choices,
        "usage": usage,
    }


def _sse(*events: Dict) -> httpx.Response:
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"
    return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})


class _DroppedStream(httpx.AsyncByteStream):
    """Response body that loses the connection after sending its parts."""

    def __init__(self, *parts: bytes):
        self._parts = parts

    async def __aiter__(self):
        for part in self._parts:
            yield part
        raise httpx.ReadError("connection reset by peer")


def _error(status: int, message: str, code: Optional[str] = None) -> httpx.Response:
    return httpx.Response(status, json={
        "error": {"message": message, "type": "invalid_request_error", "param": None, "code": code},
    })


def _provider(metrics, chat: Callable[[httpx.Request], httpx.Response],
              requests: Optional[List[httpx.Request]] = None) -> OpenAIProvider:
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json=MODELS_BODY)
        return chat(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAIProvider({'id': "openai", 'name': "OpenAI"}, metrics, http_client=client)


async def _send(provider: OpenAIProvider, parameters: Optional[LLMParameters] = None):
    stream = provider.send_message("hello", [], provider.get_model("gpt-4o"), parameters,
                                   system_prompt="be brief")
    text = await stream.collect()
    return stream, text


@pytest.mark.asyncio
async def test_streams_content_and_usage(metrics) -> None:
    requests: List[httpx.Request] = []
    provider = _provider(metrics, lambda request: _sse(
        _chunk("Hel"),
        _chunk("lo"),
        _chunk(finish_reason="stop"),
        _chunk(usage={"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11}),
    ), requests)
    await provider.authenticate({'api_key': "sk-test"})

    stream, text = await _send(provider, LLMParameters(temperature=0.2, max_tokens=64))

    assert text == "Hello"
    assert stream.usage == TokenUsage(input=9, output=2)
    assert stream.state is RequestState.COMPLETED

    chat_request = requests[-1]
    assert chat_request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(chat_request.content)
    assert body["model"] == "gpt-4o"
    assert body["stream"] is True
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 64
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hello"},
    ]
    assert metrics.get_provider_metrics("openai").request_count == 1


@pytest.mark.asyncio
async def test_send_requires_authentication(metrics) -> None:
    provider = _provider(metrics, lambda request: _sse())

    assert provider.requires_authentication
    with pytest.raises(NotConfiguredError):
        provider.send_message("hello", [], provider.get_model("gpt-4o"))


@pytest.mark.asyncio
async def test_authenticate_requires_key(metrics) -> None:
    provider = _provider(metrics, lambda request: _sse())

    with pytest.raises(AuthenticationError):
        await provider.authenticate({})


@pytest.mark.asyncio
async def test_authenticate_rejected_key(metrics) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _error(401, "Incorrect API key provided", "invalid_api_key")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAIProvider({'id': "openai"}, metrics, http_client=client)

    with pytest.raises(AuthenticationError):
        await provider.authenticate({'api_key': "sk-bad"})
    assert not provider.is_authenticated


@pytest.mark.asyncio
@pytest.mark.parametrize("response, expected", [
    (_error(401, "Incorrect API key provided", "invalid_api_key"), AuthenticationError),
    (_error(429, "Rate limit reached"), RateLimitError),
    (_error(404, "The model does not exist", "model_not_found"), ModelNotAvailableError),
    (_error(400, "temperature is out of range"), InvalidParametersError),
    (_error(500, "The server had an error"), ProviderUnavailableError),
    (_error(503, "Overloaded"), ProviderUnavailableError),
])
async def test_error_mapping(metrics, response, expected) -> None:
    provider = _provider(metrics, lambda request: response)
    await provider.authenticate({'api_key': "sk-test"})

    with pytest.raises(expected):
        await _send(provider)

    assert metrics.get_provider_metrics("openai").error_count == 1


@pytest.mark.asyncio
async def test_context_length_exceeded(metrics) -> None:
    provider = _provider(metrics, lambda request: _error(
        400,
        "This model's maximum context length is 8192 tokens. "
        "However, your messages resulted in 9000 tokens.",
        "context_length_exceeded",
    ))
    await provider.authenticate({'api_key': "sk-test"})

    with pytest.raises(ContextTooLargeError) as info:
        await _send(provider)

    assert info.value.maximum == 8192
    assert info.value.current == 9000


@pytest.mark.asyncio
async def test_connection_failure_is_network_error(metrics) -> None:
    def chat(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(metrics, chat)
    await provider.authenticate({'api_key': "sk-test"})

    with pytest.raises(NetworkError) as info:
        await _send(provider)
    assert info.value.is_transient


@pytest.mark.asyncio
async def test_connection_dropped_mid_stream(metrics) -> None:
    body = f"data: {json.dumps(_chunk('hi'))}\n\n".encode()
    provider = _provider(metrics, lambda request: httpx.Response(
        200, stream=_DroppedStream(body), headers={"content-type": "text/event-stream"},
    ))
    await provider.authenticate({'api_key': "sk-test"})

    stream = provider.send_message("hello", [], provider.get_model("gpt-4o"))
    with pytest.raises(NetworkError):
        await stream.collect()

    assert stream.content == "hi"
    assert stream.state is RequestState.FAILED
    assert metrics.get_provider_metrics("openai").error_count == 1


@pytest.mark.asyncio
async def test_get_models_narrows_to_account(metrics) -> None:
    provider = _provider(metrics, lambda request: _sse())
    assert len(await provider.get_models()) == len(OpenAIProvider.MODEL_TABLE)

    await provider.authenticate({'api_key': "sk-test"})

    assert [model.id for model in await provider.get_models()] == ["gpt-4o"]


@pytest.mark.asyncio
async def test_health_check(metrics) -> None:
    provider = _provider(metrics, lambda request: _sse())
    assert await provider.health_check() is False

    await provider.authenticate({'api_key': "sk-test"})

    assert await provider.health_check() is True
    assert metrics.get_provider_metrics("openai").last_health_check_at is not None


def test_builtin_models(metrics) -> None:
    provider = OpenAIProvider({'id': "openai"}, metrics)
    model = provider.get_model("gpt-4")

    assert model.context_window_tokens == 8192
    assert model.input_pricing == 0.03
    assert provider.url == "https://api.openai.com/v1"
