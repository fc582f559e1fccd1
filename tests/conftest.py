"""Shared pytest fixtures."""

from __future__ import annotations

import os
import random

import pytest

from marginalia.ai.cache import ResponseCache
from marginalia.ai.client import ProviderAdapter
from marginalia.ai.pipeline import QueryPipeline
from marginalia.ai.providers import MockBackend, ProviderKind
from marginalia.services.settings import AISettings

SAMPLE_SOURCE = "\n".join(
    [
        "import math",
        "",
        "",
        "def area(radius):",
        "    return math.pi * radius ** 2",
        "",
        "",
        "def fib(n):",
        "    if n < 2:",
        "        return n",
        "    return fib(n - 1) + fib(n - 2)",
        "",
        "",
        "def main():",
        "    print(area(2))",
        "    print(fib(10))",
    ]
)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    for name in list(os.environ):
        if name.startswith("MARGINALIA_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MARGINALIA_LOG_DIR", str(tmp_path_factory.mktemp("logs")))


@pytest.fixture
def sample_source() -> str:
    return SAMPLE_SOURCE


@pytest.fixture
def mock_backend() -> MockBackend:
    return MockBackend(latency=(0.0, 0.0), chunk_delay=0.0, rng=random.Random(7))


@pytest.fixture
def adapter(mock_backend: MockBackend) -> ProviderAdapter:
    return ProviderAdapter({ProviderKind.MOCK: mock_backend})


@pytest.fixture
def settings() -> AISettings:
    return AISettings(provider="mock", retry_min_seconds=0.0, retry_max_seconds=0.0)


@pytest.fixture
def pipeline(adapter: ProviderAdapter) -> QueryPipeline:
    return QueryPipeline(ResponseCache(), adapter)
