"""Provider adapter: one logical AI call behind a uniform interface.

The adapter resolves the configured provider to a :class:`ProviderKind`,
builds the prompt, enforces the hard request ceiling and folds every expected
failure into a failed :class:`QueryResult`. Nothing raised by a backend or
the transport escapes :meth:`ProviderAdapter.send`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Mapping

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..services.settings import AISettings
from .ai_types import ChunkCallback, QueryRequest, QueryResult
from .errors import ConfigError, ProviderError, QueryError, QueryTimeoutError
from .prompts import build_messages
from .providers import (
    ChatCompletionsBackend,
    Completion,
    MessagesBackend,
    MockBackend,
    ProviderBackend,
    ProviderCall,
    ProviderKind,
)

__all__ = ["PROVIDER_KINDS", "ProviderAdapter", "default_backends"]

LOGGER = logging.getLogger(__name__)

PROVIDER_KINDS: Mapping[str, ProviderKind] = {
    "mock": ProviderKind.MOCK,
    "openai": ProviderKind.CHAT_STYLE,
    "anthropic": ProviderKind.MESSAGES_STYLE,
}


def default_backends() -> Dict[ProviderKind, ProviderBackend]:
    return {
        ProviderKind.MOCK: MockBackend(),
        ProviderKind.CHAT_STYLE: ChatCompletionsBackend(),
        ProviderKind.MESSAGES_STYLE: MessagesBackend(),
    }


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


class ProviderAdapter:
    """Dispatches queries to provider backends via a capability table."""

    def __init__(
        self,
        backends: Mapping[ProviderKind, ProviderBackend] | None = None,
        *,
        provider_kinds: Mapping[str, ProviderKind] | None = None,
    ) -> None:
        self._backends: Dict[ProviderKind, ProviderBackend] = dict(backends or default_backends())
        self._provider_kinds: Dict[str, ProviderKind] = dict(provider_kinds or PROVIDER_KINDS)

    @property
    def providers(self) -> tuple[str, ...]:
        return tuple(self._provider_kinds)

    def backend_for(self, provider_id: str) -> ProviderBackend:
        kind = self._provider_kinds.get(provider_id)
        if kind is None:
            raise ConfigError(message=f"Unknown AI provider '{provider_id}'", provider=provider_id)
        backend = self._backends.get(kind)
        if backend is None:
            raise ConfigError(
                message=f"No backend registered for provider '{provider_id}'", provider=provider_id
            )
        return backend

    def build_call(self, request: QueryRequest, settings: AISettings, backend: ProviderBackend) -> ProviderCall:
        provider_id = settings.provider
        api_key = settings.api_key_for(provider_id)
        if backend.requires_api_key and not api_key:
            raise ConfigError.missing_api_key(provider_id)
        return ProviderCall(
            provider_id=provider_id,
            model=settings.model,
            messages=build_messages(request),
            api_key=api_key,
            base_url=settings.base_urls.get(provider_id) or None,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.request_timeout,
        )

    async def send(
        self,
        request: QueryRequest,
        settings: AISettings,
        *,
        on_chunk: ChunkCallback | None = None,
    ) -> QueryResult:
        """Run one query; streams through ``on_chunk`` when it is provided."""

        provider_id = settings.provider
        model_id = settings.model
        try:
            backend = self.backend_for(provider_id)
            call = self.build_call(request, settings, backend)
            LOGGER.debug(
                "Dispatching %s query via %s/%s (%s message(s))",
                "streamed" if on_chunk else "single-shot",
                provider_id,
                model_id,
                len(call.messages),
            )
            if on_chunk is None:
                operation = self._complete(backend, call, settings)
            else:
                operation = self._stream(backend, call, settings, on_chunk)
            completion = await asyncio.wait_for(operation, timeout=settings.request_timeout)
        except asyncio.TimeoutError:
            error: QueryError = QueryTimeoutError(timeout_seconds=settings.request_timeout)
        except QueryError as exc:
            error = exc
        except Exception as exc:
            LOGGER.exception("Unexpected failure while querying %s", provider_id)
            error = ProviderError(message=f"Unexpected provider failure: {exc}")
        else:
            return QueryResult(
                success=True,
                text=completion.text,
                provider_id=provider_id,
                model_id=model_id,
                usage=completion.usage,
                mock=completion.mock,
                confidence=completion.confidence,
            )

        LOGGER.warning("AI query via %s/%s failed: %s", provider_id, model_id, error)
        return QueryResult.failure(error, provider_id=provider_id, model_id=model_id)

    async def _complete(self, backend: ProviderBackend, call: ProviderCall, settings: AISettings) -> Completion:
        async for attempt in self._retrying(settings, _is_transient):
            with attempt:
                return await backend.complete(call)
        raise ProviderError(message="Provider call did not run")  # pragma: no cover

    async def _stream(
        self,
        backend: ProviderBackend,
        call: ProviderCall,
        settings: AISettings,
        on_chunk: ChunkCallback,
    ) -> Completion:
        parts: list[str] = []

        def retryable(exc: BaseException) -> bool:
            # Once text reached the caller a retry would duplicate it.
            return _is_transient(exc) and not parts

        completion = Completion(text="")
        async for attempt in self._retrying(settings, retryable):
            with attempt:
                async for event in backend.stream(call):
                    if event.type == "content.delta" and event.content:
                        parts.append(event.content)
                        on_chunk(event.content, "".join(parts))
                    elif event.type == "content.done":
                        completion.usage = event.usage
                        completion.confidence = event.confidence
        completion.text = "".join(parts)
        completion.mock = backend.kind is ProviderKind.MOCK
        return completion

    @staticmethod
    def _retrying(settings: AISettings, predicate: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, settings.max_retries)),
            wait=wait_exponential(
                multiplier=settings.retry_min_seconds,
                max=settings.retry_max_seconds,
            ),
            retry=retry_if_exception(predicate),
        )

    async def aclose(self) -> None:
        for backend in self._backends.values():
            await backend.aclose()
