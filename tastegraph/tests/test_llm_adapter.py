"""Tests for the text-generation transport."""

import json
from dataclasses import replace

import httpx
import pytest

from tastegraph.core.contracts import PromptPart
from tastegraph.llm import llm_adapter
from tastegraph.llm.client import LLMGenerationClient
from tastegraph.llm.llm_adapter import GenerationTransportError, LLMDisabledError, generate_text


class Recorder:
    """httpx handler replaying canned responses and recording requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def openai_ok(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}], "usage": {}})


@pytest.fixture
def use_config(monkeypatch):
    def _apply(**overrides):
        monkeypatch.setattr(llm_adapter, "config", replace(llm_adapter.config, **overrides))

    monkeypatch.setattr(llm_adapter, "BASE_BACKOFF", 0.0)
    return _apply


@pytest.mark.anyio
async def test_openai_request(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test", openai_model="gpt-test")
    recorder = Recorder(openai_ok("  [1, 2]  "))

    text = await generate_text(
        "system", ["Analyze this"], max_tokens=77, transport=recorder.transport
    )

    assert text == "[1, 2]"
    request = recorder.requests[0]
    assert str(request.url) == llm_adapter.OPENAI_API_URL
    assert request.headers["authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-test"
    assert body["max_tokens"] == 77
    assert body["messages"][1]["content"] == "Analyze this"


@pytest.mark.anyio
async def test_openai_image_parts(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test")
    recorder = Recorder(openai_ok("{}"))

    await generate_text(
        "system",
        [PromptPart(image_url="https://img.example.com/1.jpg"), PromptPart(text="Describe")],
        transport=recorder.transport,
    )

    content = json.loads(recorder.requests[0].content)["messages"][1]["content"]
    assert content[0] == {"type": "image_url", "image_url": {"url": "https://img.example.com/1.jpg"}}
    assert content[1] == {"type": "text", "text": "Describe"}


@pytest.mark.anyio
async def test_anthropic_request(use_config):
    use_config(llm_provider="anthropic", anthropic_api_key="ak-test")
    recorder = Recorder(
        httpx.Response(200, json={"content": [{"type": "text", "text": "hello"}], "usage": {}})
    )

    text = await generate_text(
        "system",
        [PromptPart(image_url="data:image/png;base64,AAAA"), "Describe"],
        transport=recorder.transport,
    )

    assert text == "hello"
    request = recorder.requests[0]
    assert request.headers["x-api-key"] == "ak-test"
    body = json.loads(request.content)
    assert body["system"] == "system"
    image = body["messages"][0]["content"][0]
    assert image["source"] == {"type": "base64", "media_type": "image/png", "data": "AAAA"}


@pytest.mark.anyio
async def test_proxy_request(use_config):
    use_config(llm_provider="proxy", proxy_url="https://relay.example.com/generate", proxy_api_key="pk")
    recorder = Recorder(httpx.Response(200, json={"text": "relayed"}))

    text = await generate_text("system", ["hi"], max_tokens=10, transport=recorder.transport)

    assert text == "relayed"
    request = recorder.requests[0]
    assert str(request.url) == "https://relay.example.com/generate"
    assert request.headers["x-api-key"] == "pk"
    assert json.loads(request.content) == {
        "messages": [{"role": "user", "content": "hi"}],
        "systemPrompt": "system",
        "maxTokens": 10,
    }


@pytest.mark.anyio
async def test_rate_limit_is_not_retried(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test")
    recorder = Recorder(httpx.Response(429, headers={"retry-after": "42"}, json={}))

    with pytest.raises(GenerationTransportError) as exc_info:
        await generate_text("system", ["hi"], transport=recorder.transport)

    assert exc_info.value.rate_limited
    assert exc_info.value.retry_after == 42.0
    assert len(recorder.requests) == 1


@pytest.mark.anyio
async def test_rate_limit_reset_header(use_config, monkeypatch):
    use_config(llm_provider="proxy", proxy_url="https://relay.example.com/generate")
    monkeypatch.setattr(llm_adapter.time, "time", lambda: 1_700_000_000.0)
    recorder = Recorder(httpx.Response(429, headers={"x-ratelimit-reset": "1700000060000"}))

    with pytest.raises(GenerationTransportError) as exc_info:
        await generate_text("system", ["hi"], transport=recorder.transport)

    assert exc_info.value.retry_after == 60.0


@pytest.mark.anyio
async def test_server_errors_are_retried(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test")
    recorder = Recorder(httpx.Response(503), openai_ok("recovered"))

    assert await generate_text("system", ["hi"], transport=recorder.transport) == "recovered"
    assert len(recorder.requests) == 2


@pytest.mark.anyio
async def test_server_errors_exhaust_retries(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test")
    recorder = Recorder(httpx.Response(500))

    with pytest.raises(GenerationTransportError) as exc_info:
        await generate_text("system", ["hi"], transport=recorder.transport)

    assert exc_info.value.status_code == 500
    assert "Max retries exceeded" in str(exc_info.value)
    assert len(recorder.requests) == llm_adapter.MAX_RETRIES


@pytest.mark.anyio
async def test_client_errors_are_not_retried(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test")
    recorder = Recorder(httpx.Response(400, json={"error": {"message": "bad request"}}))

    with pytest.raises(GenerationTransportError) as exc_info:
        await generate_text("system", ["hi"], transport=recorder.transport)

    assert str(exc_info.value) == "OpenAI error: bad request"
    assert len(recorder.requests) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"llm_provider": "openai", "openai_api_key": "sk-test"},
        {"llm_provider": "anthropic", "anthropic_api_key": "ak-test"},
        {"llm_provider": "proxy", "proxy_url": "https://relay.example.com/generate"},
    ],
)
@pytest.mark.parametrize("body", ["<html>gateway hiccup</html>", "[1, 2]"])
@pytest.mark.anyio
async def test_malformed_success_body_is_a_transport_error(use_config, overrides, body):
    use_config(**overrides)
    recorder = Recorder(httpx.Response(200, text=body))

    with pytest.raises(GenerationTransportError) as exc_info:
        await generate_text("system", ["hi"], transport=recorder.transport)

    assert exc_info.value.status_code == 200
    assert "malformed response body" in str(exc_info.value)
    assert len(recorder.requests) == 1


@pytest.mark.anyio
async def test_disabled_or_unconfigured(use_config):
    use_config(llm_enabled=False)
    with pytest.raises(LLMDisabledError):
        await generate_text("system", ["hi"])

    use_config(llm_enabled=True, llm_provider="anthropic", anthropic_api_key=None)
    with pytest.raises(LLMDisabledError):
        await generate_text("system", ["hi"])


@pytest.mark.anyio
async def test_generation_client(use_config):
    use_config(llm_provider="openai", openai_api_key="sk-test")
    recorder = Recorder(openai_ok("ok"))
    client = LLMGenerationClient(temperature=0.2, transport=recorder.transport)

    assert await client.generate(["hi"], "system", 55) == "ok"
    body = json.loads(recorder.requests[0].content)
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 55
