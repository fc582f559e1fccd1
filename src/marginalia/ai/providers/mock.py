"""Offline provider returning canned review feedback after an artificial delay."""

from __future__ import annotations

import asyncio
import random
import re
from typing import AsyncIterator

from ..ai_types import StreamEvent
from .base import Completion, ProviderBackend, ProviderCall, ProviderKind

__all__ = ["MOCK_RESPONSES", "MockBackend", "split_chunks"]

MOCK_RESPONSES: tuple[tuple[str, float], ...] = (
    (
        "Great selection! This code looks clean. Here are some observations:\n\n"
        "• The function is well-structured\n"
        "• Consider adding error handling\n"
        "• Variable names are descriptive",
        0.85,
    ),
    (
        "Interesting code snippet! Here's my analysis:\n\n"
        "• Good use of recursion\n"
        "• Consider memoization for better performance\n"
        "• The base case is handled correctly",
        0.92,
    ),
    (
        "Code review feedback:\n\n"
        "• This implementation is efficient\n"
        "• Consider adding docstrings\n"
        "• Type checking could improve robustness",
        0.78,
    ),
)

_CHUNK_PATTERN = re.compile(r"\s*\S+\s*")


def split_chunks(text: str) -> list[str]:
    """Split ``text`` into word-sized chunks whose concatenation is ``text``."""

    chunks = _CHUNK_PATTERN.findall(text)
    if not chunks:
        return [text] if text else []
    return chunks


class MockBackend(ProviderBackend):
    """Deterministic-when-seeded stand-in for a remote model."""

    kind = ProviderKind.MOCK
    requires_api_key = False

    def __init__(
        self,
        *,
        latency: tuple[float, float] = (0.8, 1.5),
        chunk_delay: float = 0.02,
        rng: random.Random | None = None,
        responses: tuple[tuple[str, float], ...] = MOCK_RESPONSES,
    ) -> None:
        low, high = latency
        self._latency = (max(0.0, low), max(0.0, high, low))
        self._chunk_delay = max(0.0, chunk_delay)
        self._rng = rng or random.Random()
        self._responses = responses

    async def complete(self, call: ProviderCall) -> Completion:
        await self._simulate_latency()
        text, confidence = self._pick()
        return Completion(text=text, mock=True, confidence=confidence)

    async def stream(self, call: ProviderCall) -> AsyncIterator[StreamEvent]:
        await self._simulate_latency()
        text, confidence = self._pick()
        for chunk in split_chunks(text):
            yield StreamEvent(type="content.delta", content=chunk)
            if self._chunk_delay:
                await asyncio.sleep(self._chunk_delay)
        yield StreamEvent(type="content.done", content=text, confidence=confidence)

    def _pick(self) -> tuple[str, float]:
        return self._rng.choice(self._responses)

    async def _simulate_latency(self) -> None:
        low, high = self._latency
        delay = self._rng.uniform(low, high) if high > low else low
        if delay:
            await asyncio.sleep(delay)
