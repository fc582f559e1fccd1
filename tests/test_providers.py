"""Tests for the provider backends."""

from __future__ import annotations

import json
import random
from types import SimpleNamespace
from typing import Any, Iterable

import httpx
import openai
import pytest

from marginalia.ai.errors import AuthError, ProviderError, QueryTimeoutError, RateLimitError
from marginalia.ai.providers import ChatCompletionsBackend, MessagesBackend, MockBackend, ProviderCall
from marginalia.ai.providers.chat import translate_openai_error
from marginalia.ai.providers.messages import (
    ANTHROPIC_VERSION,
    DEFAULT_MESSAGES_URL,
    SSE_DONE,
    parse_sse_line,
    parse_sse_usage,
)
from marginalia.ai.providers.mock import MOCK_RESPONSES, split_chunks


def _call(**overrides: Any) -> ProviderCall:
    params: dict[str, Any] = {
        "provider_id": "openai",
        "model": "test-model",
        "messages": [
            {"role": "system", "content": "be helpful"},
            {"role": "user", "content": "review this"},
        ],
        "api_key": "sk-test-123456789",
        "max_tokens": 200,
        "temperature": 0.2,
    }
    params.update(overrides)
    return ProviderCall(**params)


async def _collect(iterator) -> list:
    return [event async for event in iterator]


# ---------------------------------------------------------------------------
# Mock backend
# ---------------------------------------------------------------------------


class TestMockBackend:
    @pytest.mark.asyncio
    async def test_complete_returns_canned_response_with_confidence(self) -> None:
        backend = MockBackend(latency=(0.0, 0.0), rng=random.Random(1))

        completion = await backend.complete(_call(provider_id="mock"))

        assert (completion.text, completion.confidence) in MOCK_RESPONSES
        assert completion.mock is True

    @pytest.mark.asyncio
    async def test_stream_chunks_concatenate_to_full_text(self) -> None:
        backend = MockBackend(latency=(0.0, 0.0), chunk_delay=0.0, rng=random.Random(2))

        events = await _collect(backend.stream(_call(provider_id="mock")))

        deltas = [event.content for event in events if event.type == "content.delta"]
        done = events[-1]
        assert done.type == "content.done"
        assert "".join(deltas) == done.content
        assert len(deltas) > 1
        assert done.confidence is not None

    def test_split_chunks_preserves_whitespace(self) -> None:
        text = "Line one\n\n• item  two"

        chunks = split_chunks(text)

        assert "".join(chunks) == text
        assert chunks[0] == "Line "

    def test_backend_does_not_need_api_key(self) -> None:
        assert MockBackend.requires_api_key is False


# ---------------------------------------------------------------------------
# Chat-completions backend
# ---------------------------------------------------------------------------


class _FakeStream:
    def __init__(self, chunks: Iterable[Any]):
        self._iterator = iter(list(chunks))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> Any:
        try:
            return next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class _FakeCompletions:
    def __init__(self, response: Any = None, *, chunks: Iterable[Any] = (), error: Exception | None = None):
        self._response = response
        self._chunks = list(chunks)
        self._error = error
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        if kwargs.get("stream"):
            return _FakeStream(self._chunks)
        return self._response


class _FakeClient:
    def __init__(self, completions: _FakeCompletions):
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _chat_backend(completions: _FakeCompletions) -> tuple[ChatCompletionsBackend, list[_FakeClient]]:
    clients: list[_FakeClient] = []

    def factory(call: ProviderCall) -> _FakeClient:
        client = _FakeClient(completions)
        clients.append(client)
        return client

    return ChatCompletionsBackend(client_factory=factory), clients  # type: ignore[arg-type]


def _status_response(status: int) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


class TestChatCompletionsBackend:
    @pytest.mark.asyncio
    async def test_complete_reads_first_choice_and_usage(self) -> None:
        response = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="Looks fine."))],
            usage={"prompt_tokens": 12, "completion_tokens": 3},
        )
        completions = _FakeCompletions(response)
        backend, clients = _chat_backend(completions)

        completion = await backend.complete(_call())

        assert completion.text == "Looks fine."
        assert completion.usage == {"prompt_tokens": 12, "completion_tokens": 3}
        assert completions.calls[0]["model"] == "test-model"
        assert completions.calls[0]["max_tokens"] == 200
        assert completions.calls[0]["messages"][0] == {"role": "system", "content": "be helpful"}
        assert clients[0].closed is True

    @pytest.mark.asyncio
    async def test_stream_yields_deltas_then_done_with_usage(self) -> None:
        chunks = [
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="Hel"))], usage=None),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None))], usage=None),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="lo"))], usage=None),
            SimpleNamespace(choices=[], usage={"total_tokens": 9}),
        ]
        completions = _FakeCompletions(chunks=chunks)
        backend, _ = _chat_backend(completions)

        events = await _collect(backend.stream(_call()))

        assert [event.content for event in events if event.type == "content.delta"] == ["Hel", "lo"]
        assert events[-1].type == "content.done"
        assert events[-1].usage == {"total_tokens": 9}
        assert completions.calls[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_authentication_error_maps_to_auth_error(self) -> None:
        error = openai.AuthenticationError("bad key", response=_status_response(401), body=None)
        backend, clients = _chat_backend(_FakeCompletions(error=error))

        with pytest.raises(AuthError) as excinfo:
            await backend.complete(_call())

        assert excinfo.value.message == "Invalid API key"
        assert clients[0].closed is True

    def test_rate_limit_maps_to_rate_limit_error(self) -> None:
        error = openai.RateLimitError("slow down", response=_status_response(429), body=None)

        translated = translate_openai_error(error)

        assert isinstance(translated, RateLimitError)
        assert translated.message == "Rate limit exceeded - please try again later"

    def test_other_status_maps_to_provider_error_with_status(self) -> None:
        error = openai.APIStatusError("boom", response=_status_response(503), body=None)

        translated = translate_openai_error(error)

        assert isinstance(translated, ProviderError)
        assert translated.message == "API error: 503"
        assert translated.status_code == 503

    def test_timeout_maps_to_timeout_error(self) -> None:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

        translated = translate_openai_error(openai.APITimeoutError(request=request))

        assert isinstance(translated, QueryTimeoutError)
        assert translated.message == "Request timeout - please try again"

    def test_connection_error_is_transient(self) -> None:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

        translated = translate_openai_error(openai.APIConnectionError(request=request))

        assert isinstance(translated, ProviderError)
        assert translated.transient is True


# ---------------------------------------------------------------------------
# Messages backend
# ---------------------------------------------------------------------------


def _sse(*events: dict[str, Any]) -> bytes:
    lines = []
    for event in events:
        lines.append(f"event: {event.get('type', 'message')}")
        lines.append(f"data: {json.dumps(event)}")
        lines.append("")
    return ("\n".join(lines) + "\n").encode("utf-8")


class TestMessagesBackend:
    @pytest.mark.asyncio
    async def test_complete_sends_headers_and_system_field(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "content": [{"type": "text", "text": "Consider "}, {"type": "text", "text": "a guard."}],
                    "usage": {"input_tokens": 20, "output_tokens": 4},
                },
            )

        backend = MessagesBackend(transport=httpx.MockTransport(handler))

        completion = await backend.complete(_call(provider_id="anthropic"))

        assert completion.text == "Consider a guard."
        assert completion.usage == {"input_tokens": 20, "output_tokens": 4}
        request = seen[0]
        assert str(request.url) == DEFAULT_MESSAGES_URL
        assert request.headers["x-api-key"] == "sk-test-123456789"
        assert request.headers["anthropic-version"] == ANTHROPIC_VERSION
        body = json.loads(request.content)
        assert body["system"] == "be helpful"
        assert body["messages"] == [{"role": "user", "content": "review this"}]
        assert body["max_tokens"] == 200

    @pytest.mark.asyncio
    async def test_stream_parses_server_sent_events(self) -> None:
        body = _sse(
            {"type": "message_start", "message": {"id": "m1", "usage": {"input_tokens": 25, "output_tokens": 1}}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Use "}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "a set."}},
            {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}},
            {"type": "message_stop"},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ignored"}},
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        backend = MessagesBackend(transport=httpx.MockTransport(handler))

        events = await _collect(backend.stream(_call(provider_id="anthropic")))

        assert [event.content for event in events if event.type == "content.delta"] == ["Use ", "a set."]
        assert events[-1].type == "content.done"
        assert events[-1].usage == {"input_tokens": 25, "output_tokens": 7}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "error_type", "message"),
        [
            (401, AuthError, "Invalid API key"),
            (429, RateLimitError, "Rate limit exceeded - please try again later"),
            (400, ProviderError, "API error: 400 (max_tokens too large)"),
        ],
    )
    async def test_error_statuses_are_normalized(self, status: int, error_type: type, message: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json={"error": {"message": "max_tokens too large"}})

        backend = MessagesBackend(transport=httpx.MockTransport(handler))

        with pytest.raises(error_type) as excinfo:
            await backend.complete(_call(provider_id="anthropic"))

        assert excinfo.value.message == message

    @pytest.mark.asyncio
    async def test_server_errors_are_transient(self) -> None:
        backend = MessagesBackend(transport=httpx.MockTransport(lambda request: httpx.Response(502)))

        with pytest.raises(ProviderError) as excinfo:
            await backend.complete(_call(provider_id="anthropic"))

        assert excinfo.value.transient is True
        assert excinfo.value.message == "API error: 502"

    @pytest.mark.asyncio
    async def test_transport_timeout_maps_to_timeout_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        backend = MessagesBackend(transport=httpx.MockTransport(handler))

        with pytest.raises(QueryTimeoutError):
            await backend.complete(_call(provider_id="anthropic"))


class TestParseSseLine:
    def test_non_data_lines_are_ignored(self) -> None:
        assert parse_sse_line("event: content_block_delta") is None
        assert parse_sse_line(": keep-alive") is None
        assert parse_sse_line("") is None

    def test_done_markers(self) -> None:
        assert parse_sse_line("data: [DONE]") is SSE_DONE
        assert parse_sse_line('data: {"type": "message_stop"}') is SSE_DONE

    def test_messages_and_chat_deltas(self) -> None:
        assert parse_sse_line('data: {"delta": {"text": "hi"}}') == "hi"
        assert parse_sse_line('data: {"choices": [{"delta": {"content": "yo"}}]}') == "yo"

    def test_malformed_payload_is_skipped(self) -> None:
        assert parse_sse_line("data: {not json") is None

    def test_usage_from_start_and_delta_events(self) -> None:
        start = 'data: {"type": "message_start", "message": {"usage": {"input_tokens": 3}}}'
        delta = 'data: {"type": "message_delta", "usage": {"output_tokens": 9}}'

        assert parse_sse_usage(start) == {"input_tokens": 3}
        assert parse_sse_usage(delta) == {"output_tokens": 9}
        assert parse_sse_usage('data: {"delta": {"text": "hi"}}') is None
        assert parse_sse_usage("data: [DONE]") is None

    def test_error_event_raises(self) -> None:
        with pytest.raises(ProviderError, match="overloaded"):
            parse_sse_line('data: {"type": "error", "error": {"message": "overloaded"}}')
