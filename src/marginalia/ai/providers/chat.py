"""Chat-completions provider built on the OpenAI SDK."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Dict

import httpx
import openai
from openai import AsyncOpenAI

from ..ai_types import StreamEvent
from ..errors import AuthError, ProviderError, QueryError, QueryTimeoutError, RateLimitError
from .base import Completion, ProviderBackend, ProviderCall, ProviderKind, close_quietly, usage_to_dict

__all__ = ["ChatCompletionsBackend", "translate_openai_error"]

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderCall], AsyncOpenAI]


def _default_client_factory(call: ProviderCall) -> AsyncOpenAI:
    # Retries are owned by the adapter; the SDK would otherwise retry 429s.
    return AsyncOpenAI(
        api_key=call.api_key,
        base_url=call.base_url,
        timeout=call.timeout,
        max_retries=0,
    )


def translate_openai_error(exc: Exception) -> QueryError:
    """Map OpenAI SDK exceptions onto the normalized error taxonomy."""

    if isinstance(exc, openai.APITimeoutError):
        return QueryTimeoutError()
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError()
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError()
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(message=f"API error: {exc.status_code}", status_code=exc.status_code)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(message=f"Connection error: {exc}", transient=True)
    if isinstance(exc, httpx.TimeoutException):
        return QueryTimeoutError()
    return ProviderError(message=f"Unexpected provider response: {exc}")


class ChatCompletionsBackend(ProviderBackend):
    """OpenAI-compatible ``/chat/completions`` backend with bearer auth."""

    kind = ProviderKind.CHAT_STYLE

    def __init__(self, *, client_factory: ClientFactory | None = None) -> None:
        self._client_factory = client_factory or _default_client_factory

    async def complete(self, call: ProviderCall) -> Completion:
        client = self._client_factory(call)
        try:
            response = await client.chat.completions.create(**self._build_payload(call))
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        finally:
            await close_quietly(client)

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as exc:
            raise ProviderError(message="Malformed chat completion response") from exc
        return Completion(text=content or "", usage=usage_to_dict(getattr(response, "usage", None)))

    async def stream(self, call: ProviderCall) -> AsyncIterator[StreamEvent]:
        client = self._client_factory(call)
        usage: Dict[str, Any] | None = None
        try:
            stream = await client.chat.completions.create(**self._build_payload(call, stream=True))
            async for chunk in stream:
                chunk_usage = usage_to_dict(getattr(chunk, "usage", None))
                if chunk_usage:
                    usage = chunk_usage
                delta = _chunk_delta(chunk)
                if delta:
                    yield StreamEvent(type="content.delta", content=delta)
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc) from exc
        finally:
            await close_quietly(client)
        yield StreamEvent(type="content.done", usage=usage)

    def _build_payload(self, call: ProviderCall, *, stream: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": call.model,
            "messages": [dict(message) for message in call.messages],
        }
        if call.temperature is not None:
            payload["temperature"] = call.temperature
        if call.max_tokens is not None:
            payload["max_tokens"] = call.max_tokens
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload


def _chunk_delta(chunk: Any) -> str | None:
    choices = getattr(chunk, "choices", None) or ()
    if not choices:
        return None
    delta = getattr(choices[0], "delta", None)
    content = getattr(delta, "content", None)
    return str(content) if content else None
