"""Query pipeline: cache lookup, provider dispatch and result formatting."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from ..services.settings import AISettings
from .ai_types import ChunkCallback, HistoryTurn, QueryRequest, QueryResult, Selection
from .cache import ResponseCache
from .client import ProviderAdapter

__all__ = ["FormattedResponse", "QueryPipeline", "format_result"]

LOGGER = logging.getLogger(__name__)


class QueryPipeline:
    """Single entry point turning a selection and question into an answer.

    The pipeline holds no per-call state; the cache and the adapter are
    injected so hosts decide their lifetime.
    """

    def __init__(self, cache: ResponseCache, adapter: ProviderAdapter) -> None:
        self._cache = cache
        self._adapter = adapter

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    async def query(
        self,
        selection: Selection,
        full_text: str,
        question: str,
        settings: AISettings,
        history: Iterable[HistoryTurn] | None = None,
    ) -> QueryResult:
        return await self._run(selection, full_text, question, settings, history, on_chunk=None)

    async def query_streaming(
        self,
        selection: Selection,
        full_text: str,
        question: str,
        settings: AISettings,
        history: Iterable[HistoryTurn] | None,
        on_chunk: ChunkCallback,
    ) -> QueryResult:
        """Like :meth:`query` but forwards partial text to ``on_chunk``.

        A cache hit resolves immediately without invoking ``on_chunk``.
        """
        return await self._run(selection, full_text, question, settings, history, on_chunk=on_chunk)

    async def _run(
        self,
        selection: Selection,
        full_text: str,
        question: str,
        settings: AISettings,
        history: Iterable[HistoryTurn] | None,
        *,
        on_chunk: ChunkCallback | None,
    ) -> QueryResult:
        if selection.is_empty:
            raise ValueError("Cannot query the AI without a non-empty selection")

        key = self._cache.make_key(selection)
        cached = self._cache.get(key)
        if cached is not None:
            LOGGER.debug("Returning cached response for lines %s", selection.line_label)
            return cached.with_cached()

        request = QueryRequest(
            selection=selection,
            full_text=full_text,
            question=question or "",
            history=tuple(history or ()),
        )
        result = await self._adapter.send(request, settings, on_chunk=on_chunk)
        if result.success:
            self._cache.put(key, result)
        return result


@dataclass(slots=True, frozen=True)
class FormattedResponse:
    """Display-ready view of a query result."""

    text: str
    kind: str
    is_mock: bool = False
    is_cached: bool = False
    confidence: float | None = None


def format_result(result: QueryResult) -> FormattedResponse:
    if not result.success:
        return FormattedResponse(text=f"Error: {result.error}", kind="error")
    return FormattedResponse(
        text=result.text,
        kind="success",
        is_mock=result.mock,
        is_cached=result.cached,
        confidence=result.confidence,
    )
