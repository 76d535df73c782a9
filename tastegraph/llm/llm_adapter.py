"""Text-generation transport: OpenAI, Anthropic or a hosted relay.

Every failure leaves this module as ``GenerationTransportError``. Rate-limit
responses are raised immediately with their retry hint; only server errors,
timeouts and connection errors are retried here.
"""

import asyncio
import time
from typing import Any, Sequence

import httpx

from tastegraph.config import config
from tastegraph.core.contracts import PromptPart
from tastegraph.logging import get_logger

logger = get_logger(__name__)

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
MAX_RETRIES = 3
BASE_BACKOFF = 1.0


class GenerationTransportError(Exception):
    """Any failure talking to the text generator."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class LLMDisabledError(GenerationTransportError):
    """Raised when generation is disabled or the provider is not configured."""


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Seconds to wait according to the response headers, if any.

    ``Retry-After`` carries seconds; the relay's ``X-RateLimit-Reset``
    carries an absolute epoch timestamp (milliseconds or seconds).
    """
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

    reset = response.headers.get("x-ratelimit-reset")
    if reset:
        try:
            reset_value = float(reset)
        except ValueError:
            return None
        if reset_value > 1e12:
            reset_value /= 1000.0
        return max(0.0, reset_value - time.time())

    return None


def _error_message(response: httpx.Response, label: str) -> str:
    try:
        error_data = response.json()
        error = error_data.get("error", {})
        if isinstance(error, dict):
            return f"{label} error: {error.get('message') or error.get('type') or response.status_code}"
        return f"{label} error: {error}"
    except Exception:
        return f"{label} error: HTTP {response.status_code}"


def _json_body(response: httpx.Response, label: str) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise GenerationTransportError(
            f"{label} returned a malformed response body", status_code=response.status_code
        )
    return data


def _raise_for_response(response: httpx.Response, label: str) -> None:
    if response.status_code == 429:
        raise GenerationTransportError(
            f"{label} rate limit exceeded",
            status_code=429,
            retry_after=_parse_retry_after(response),
        )
    if response.status_code >= 500:
        raise GenerationTransportError(
            f"{label} server error: {response.status_code}",
            status_code=response.status_code,
        )
    raise GenerationTransportError(
        _error_message(response, label), status_code=response.status_code
    )


def _as_parts(prompt_parts: Sequence[PromptPart | str]) -> list[PromptPart]:
    return [PromptPart(text=p) if isinstance(p, str) else p for p in prompt_parts]


def _openai_content(parts: list[PromptPart]) -> str | list[dict[str, Any]]:
    if not any(part.is_image for part in parts):
        return "\n\n".join(part.text or "" for part in parts)
    content: list[dict[str, Any]] = []
    for part in parts:
        if part.is_image:
            content.append({"type": "image_url", "image_url": {"url": part.image_url}})
        else:
            content.append({"type": "text", "text": part.text or ""})
    return content


def _anthropic_content(parts: list[PromptPart]) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for part in parts:
        if not part.is_image:
            content.append({"type": "text", "text": part.text or ""})
            continue
        url = part.image_url or ""
        if url.startswith("data:") and ";base64," in url:
            header, data = url[5:].split(";base64,", 1)
            source = {"type": "base64", "media_type": header or "image/jpeg", "data": data}
        else:
            source = {"type": "url", "url": url}
        content.append({"type": "image", "source": source})
    return content


async def _call_openai(
    client: httpx.AsyncClient,
    system_prompt: str,
    parts: list[PromptPart],
    max_tokens: int,
    temperature: float,
) -> str:
    """Call OpenAI chat completions API."""
    headers = {
        "Authorization": f"Bearer {config.openai_api_key}",
        "Content-Type": "application/json",
    }
    payload = {
        "model": config.openai_model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": _openai_content(parts)},
        ],
        "max_tokens": max_tokens,
        "temperature": temperature,
    }

    response = await client.post(OPENAI_API_URL, headers=headers, json=payload)

    if response.status_code == 200:
        data = _json_body(response, "OpenAI")
        choices = data.get("choices", [])
        if choices:
            logger.debug(
                f"OpenAI tokens: {data.get('usage', {}).get('total_tokens', 'N/A')}"
            )
            return (choices[0].get("message", {}).get("content") or "").strip()
        raise GenerationTransportError("Empty response from OpenAI", status_code=200)

    _raise_for_response(response, "OpenAI")
    return ""  # unreachable


async def _call_anthropic(
    client: httpx.AsyncClient,
    system_prompt: str,
    parts: list[PromptPart],
    max_tokens: int,
    temperature: float,
) -> str:
    """Call Anthropic Messages API."""
    headers = {
        "x-api-key": config.anthropic_api_key or "",
        "anthropic-version": "2023-06-01",
        "Content-Type": "application/json",
    }
    payload = {
        "model": config.anthropic_model,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "system": system_prompt,
        "messages": [{"role": "user", "content": _anthropic_content(parts)}],
    }

    response = await client.post(ANTHROPIC_API_URL, headers=headers, json=payload)

    if response.status_code == 200:
        data = _json_body(response, "Anthropic")
        text_parts = [
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        ]
        usage = data.get("usage", {})
        logger.debug(
            f"Anthropic tokens: in={usage.get('input_tokens', '?')}, "
            f"out={usage.get('output_tokens', '?')}"
        )
        return "\n".join(text_parts).strip()

    _raise_for_response(response, "Anthropic")
    return ""  # unreachable


async def _call_proxy(
    client: httpx.AsyncClient,
    system_prompt: str,
    parts: list[PromptPart],
    max_tokens: int,
    temperature: float,
) -> str:
    """Call the hosted relay, which owns provider credentials."""
    headers = {"Content-Type": "application/json"}
    if config.proxy_api_key:
        headers["x-api-key"] = config.proxy_api_key
    payload = {
        "messages": [{"role": "user", "content": _openai_content(parts)}],
        "systemPrompt": system_prompt,
        "maxTokens": max_tokens,
    }

    response = await client.post(config.proxy_url or "", headers=headers, json=payload)

    if response.status_code == 200:
        return (_json_body(response, "Proxy").get("text") or "").strip()

    _raise_for_response(response, "Proxy")
    return ""  # unreachable


def _resolve_provider() -> tuple[Any, str]:
    provider = config.llm_provider
    if provider == "anthropic":
        if not config.anthropic_api_key:
            raise LLMDisabledError("ANTHROPIC_API_KEY is not configured")
        return _call_anthropic, f"Anthropic/{config.anthropic_model}"
    if provider == "proxy":
        if not config.proxy_url:
            raise LLMDisabledError("PROXY_URL is not configured")
        return _call_proxy, "Proxy"
    if not config.openai_api_key:
        raise LLMDisabledError("OPENAI_API_KEY is not configured")
    return _call_openai, f"OpenAI/{config.openai_model}"


async def generate_text(
    system_prompt: str,
    prompt_parts: Sequence[PromptPart | str],
    max_tokens: int = 1024,
    temperature: float = 0.7,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Generate text using the configured provider.

    Args:
        system_prompt: System instructions for the model
        prompt_parts: User message parts (text and image references)
        max_tokens: Maximum tokens in response
        temperature: Sampling temperature
        transport: Optional httpx transport (tests)

    Returns:
        Generated text

    Raises:
        LLMDisabledError: If generation is disabled or unconfigured
        GenerationTransportError: On rate limiting, client errors, or after
            retries for server/network errors are exhausted
    """
    if not config.llm_enabled:
        raise LLMDisabledError("LLM is disabled in configuration")

    call_fn, provider_label = _resolve_provider()
    parts = _as_parts(prompt_parts)
    last_error: Exception | None = None

    async with httpx.AsyncClient(
        timeout=config.llm_timeout_seconds, transport=transport
    ) as client:
        for attempt in range(MAX_RETRIES):
            try:
                return await call_fn(client, system_prompt, parts, max_tokens, temperature)

            except GenerationTransportError as e:
                if e.rate_limited:
                    logger.warning(
                        f"{provider_label} rate limited, retry_after={e.retry_after}"
                    )
                    raise
                if not (e.status_code and e.status_code >= 500):
                    raise
                last_error = e
                wait_time = BASE_BACKOFF * (2 ** attempt)
                logger.warning(
                    f"{provider_label} server error, retry in {wait_time}s "
                    f"(attempt {attempt + 1}/{MAX_RETRIES})"
                )

            except httpx.TimeoutException as e:
                last_error = e
                wait_time = BASE_BACKOFF * (2 ** attempt)
                logger.warning(
                    f"{provider_label} timeout, retry in {wait_time}s "
                    f"(attempt {attempt + 1}/{MAX_RETRIES})"
                )

            except httpx.RequestError as e:
                last_error = e
                wait_time = BASE_BACKOFF * (2 ** attempt)
                logger.warning(
                    f"{provider_label} request error: {e}, retry in {wait_time}s "
                    f"(attempt {attempt + 1}/{MAX_RETRIES})"
                )

            if attempt < MAX_RETRIES - 1:
                await asyncio.sleep(wait_time)

    status_code = getattr(last_error, "status_code", None)
    raise GenerationTransportError(
        f"Max retries exceeded ({provider_label}): {last_error}",
        status_code=status_code,
    )
