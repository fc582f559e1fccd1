"""Messages-style provider (Anthropic wire format) over raw ``httpx``."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Mapping

import httpx

from ..ai_types import StreamEvent
from ..errors import AuthError, ProviderError, QueryTimeoutError, RateLimitError
from ..prompts import split_system
from .base import Completion, ProviderBackend, ProviderCall, ProviderKind

__all__ = [
    "DEFAULT_MESSAGES_URL",
    "MessagesBackend",
    "SSE_DONE",
    "parse_sse_line",
    "parse_sse_usage",
    "raise_for_status",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
_DATA_PREFIX = "data:"


class _Done:
    def __repr__(self) -> str:
        return "SSE_DONE"


SSE_DONE = _Done()


def parse_sse_line(line: str) -> str | _Done | None:
    """Decode one line of an event stream.

    Returns the partial text carried by a ``data:`` line, :data:`SSE_DONE` for
    a terminal event, or ``None`` for anything without text (comments,
    ``event:`` lines, keep-alives, metadata events).
    """

    stripped = line.strip()
    if not stripped.startswith(_DATA_PREFIX):
        return None
    body = stripped[len(_DATA_PREFIX):].strip()
    if not body:
        return None
    if body == "[DONE]":
        return SSE_DONE
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        LOGGER.debug("Skipping undecodable stream payload: %s", body[:80])
        return None
    if not isinstance(payload, Mapping):
        return None
    event_type = payload.get("type")
    if event_type == "message_stop":
        return SSE_DONE
    if event_type == "error":
        error = payload.get("error") or {}
        message = error.get("message") if isinstance(error, Mapping) else None
        raise ProviderError(message=f"Stream error: {message or 'unknown error'}")
    return _extract_delta(payload)


def parse_sse_usage(line: str) -> dict[str, Any] | None:
    """Return token usage carried by a ``message_start`` or ``message_delta`` event."""

    stripped = line.strip()
    if not stripped.startswith(_DATA_PREFIX):
        return None
    try:
        payload = json.loads(stripped[len(_DATA_PREFIX):].strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, Mapping):
        return None
    if payload.get("type") == "message_start":
        message = payload.get("message")
        usage = message.get("usage") if isinstance(message, Mapping) else None
    elif payload.get("type") == "message_delta":
        usage = payload.get("usage")
    else:
        return None
    return dict(usage) if isinstance(usage, Mapping) else None


def _extract_delta(payload: Mapping[str, Any]) -> str | None:
    delta = payload.get("delta")
    if isinstance(delta, Mapping):
        text = delta.get("text")
        if isinstance(text, str) and text:
            return text
    # Chat-style chunks carry their text under choices[0].delta.content.
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], Mapping):
        chat_delta = choices[0].get("delta")
        if isinstance(chat_delta, Mapping):
            content = chat_delta.get("content")
            if isinstance(content, str) and content:
                return content
    return None


def raise_for_status(response: httpx.Response) -> None:
    """Translate a non-2xx response into the normalized error taxonomy."""

    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise AuthError()
    if status == 429:
        raise RateLimitError()
    detail = _error_detail(response)
    message = f"API error: {status}"
    if detail:
        message = f"{message} ({detail})"
    raise ProviderError(message=message, status_code=status, transient=status >= 500)


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping):
            message = error.get("message")
            return str(message) if message else None
    return None


class MessagesBackend(ProviderBackend):
    """Backend for ``/v1/messages`` style APIs using header API keys."""

    kind = ProviderKind.MESSAGES_STYLE

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def complete(self, call: ProviderCall) -> Completion:
        async with self._client(call) as client:
            try:
                response = await client.post(
                    self._url(call), json=self._build_payload(call), headers=self._headers(call)
                )
            except httpx.TimeoutException as exc:
                raise QueryTimeoutError(timeout_seconds=call.timeout) from exc
            except httpx.TransportError as exc:
                raise ProviderError(message=f"Connection error: {exc}", transient=True) from exc
        raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(message="Malformed response body from provider") from exc
        return Completion(text=_join_text_blocks(data), usage=_usage(data))

    async def stream(self, call: ProviderCall) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(call, stream=True)
        usage: Dict[str, Any] = {}
        async with self._client(call) as client:
            try:
                async with client.stream(
                    "POST", self._url(call), json=payload, headers=self._headers(call)
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise_for_status(response)
                    async for line in response.aiter_lines():
                        usage.update(parse_sse_usage(line) or {})
                        delta = parse_sse_line(line)
                        if delta is SSE_DONE:
                            break
                        if isinstance(delta, str):
                            yield StreamEvent(type="content.delta", content=delta)
            except httpx.TimeoutException as exc:
                raise QueryTimeoutError(timeout_seconds=call.timeout) from exc
            except httpx.TransportError as exc:
                raise ProviderError(message=f"Connection error: {exc}", transient=True) from exc
        yield StreamEvent(type="content.done", usage=usage or None)

    def _client(self, call: ProviderCall) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=call.timeout, transport=self._transport)

    @staticmethod
    def _url(call: ProviderCall) -> str:
        return call.base_url or DEFAULT_MESSAGES_URL

    @staticmethod
    def _headers(call: ProviderCall) -> Dict[str, str]:
        return {
            "x-api-key": call.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    @staticmethod
    def _build_payload(call: ProviderCall, *, stream: bool = False) -> Dict[str, Any]:
        system, turns = split_system(call.messages)
        payload: Dict[str, Any] = {
            "model": call.model,
            "messages": turns,
            "max_tokens": call.max_tokens or 1024,
        }
        if system:
            payload["system"] = system
        if call.temperature is not None:
            payload["temperature"] = call.temperature
        if stream:
            payload["stream"] = True
        return payload


def _join_text_blocks(data: Any) -> str:
    if not isinstance(data, Mapping):
        raise ProviderError(message="Malformed response body from provider")
    blocks = data.get("content")
    if not isinstance(blocks, list):
        raise ProviderError(message="Provider response did not include content")
    return "".join(
        str(block.get("text", ""))
        for block in blocks
        if isinstance(block, Mapping) and block.get("type") == "text"
    )


def _usage(data: Mapping[str, Any]) -> dict[str, Any] | None:
    usage = data.get("usage")
    return dict(usage) if isinstance(usage, Mapping) else None
