"""Tests for the Ask-AI review session."""

from __future__ import annotations

import asyncio
import random

import pytest

from marginalia.ai.ai_types import Selection
from marginalia.ai.cache import ResponseCache
from marginalia.ai.client import ProviderAdapter
from marginalia.ai.pipeline import QueryPipeline
from marginalia.ai.providers import MockBackend, ProviderKind
from marginalia.services.persistence import InMemoryPersistence
from marginalia.services.review_session import ReviewSession
from marginalia.services.settings import AISettings
from marginalia.threads.models import MessageRole
from marginalia.threads.store import ThreadStore


@pytest.fixture
def store(sample_source: str) -> ThreadStore:
    store = ThreadStore(InMemoryPersistence(), rng=random.Random(1))
    store.set_document(sample_source, "python")
    store.update_ai_settings(AISettings(provider="mock", retry_min_seconds=0.0, retry_max_seconds=0.0))
    return store


@pytest.fixture
def session(store: ThreadStore, pipeline: QueryPipeline) -> ReviewSession:
    return ReviewSession(store, pipeline)


@pytest.mark.asyncio
async def test_ask_creates_thread_with_question_and_reply(
    session: ReviewSession, store: ThreadStore, sample_source: str
) -> None:
    selection = Selection.from_text(sample_source, 8, 11)

    outcome = await session.ask(selection, "Is this efficient?")

    thread = outcome.thread
    assert store.active_thread_id == thread.id
    assert (thread.start_line, thread.end_line) == (8, 11)
    assert thread.anchor_text == selection.text
    assert [message.role for message in thread.messages] == [MessageRole.USER, MessageRole.AI]
    assert thread.messages[0].content == "Is this efficient?"
    assert thread.messages[1].content == outcome.result.text
    assert outcome.reply is thread.messages[1]


@pytest.mark.asyncio
async def test_ask_validates_input(session: ReviewSession, store: ThreadStore) -> None:
    with pytest.raises(ValueError, match="Select code"):
        await session.ask(Selection(start_line=1, end_line=1, text="  "), "Why?")
    with pytest.raises(ValueError, match="Add a question"):
        await session.ask(Selection(start_line=1, end_line=1, text="x"), "   ")
    assert len(store) == 0


@pytest.mark.asyncio
async def test_streaming_ask_tracks_progress(session: ReviewSession, sample_source: str) -> None:
    selection = Selection.from_text(sample_source, 4, 5)
    observed: list[tuple[bool, str | None, str]] = []

    def on_chunk(chunk: str, accumulated: str) -> None:
        observed.append((session.is_ai_loading, session.streaming_thread_id, session.streaming_text))

    outcome = await session.ask(selection, "Explain", stream=True, on_chunk=on_chunk)

    assert observed
    assert all(loading for loading, _, _ in observed)
    assert {thread_id for _, thread_id, _ in observed} == {outcome.thread.id}
    assert observed[-1][2] == outcome.result.text
    assert session.is_ai_loading is False
    assert session.streaming_thread_id is None
    assert session.streaming_text == ""


@pytest.mark.asyncio
async def test_failed_query_records_error_message(session: ReviewSession, sample_source: str) -> None:
    selection = Selection.from_text(sample_source, 1, 1)

    outcome = await session.ask(selection, "Why?", settings=AISettings(provider="openai"))

    assert outcome.result.success is False
    assert outcome.thread.messages[-1].role is MessageRole.AI
    assert outcome.result.error_code == "config_error"
    assert outcome.thread.messages[-1].content == f"Error: {outcome.result.error}"


@pytest.mark.asyncio
async def test_reply_replays_history(store: ThreadStore, sample_source: str) -> None:
    captured: list[list[dict[str, str]]] = []

    class RecordingBackend(MockBackend):
        async def complete(self, call):
            captured.append([dict(message) for message in call.messages])
            return await super().complete(call)

    backend = RecordingBackend(latency=(0.0, 0.0), rng=random.Random(2))
    session = ReviewSession(store, QueryPipeline(ResponseCache(), ProviderAdapter({ProviderKind.MOCK: backend})))
    first = await session.ask(Selection.from_text(sample_source, 4, 5), "What is this?")
    session.pipeline.cache.clear()

    outcome = await session.reply(first.thread.id, "Any edge cases?")

    assert outcome is not None
    assert len(outcome.thread.messages) == 4
    assert outcome.thread.messages[2].content == "Any edge cases?"
    roles = [message["role"] for message in captured[-1]]
    assert roles == ["system", "user", "user", "assistant", "user"]
    assert captured[-1][-1]["content"] == "Question: Any edge cases?"


@pytest.mark.asyncio
async def test_reply_to_missing_thread_returns_none(session: ReviewSession) -> None:
    assert await session.reply("nonexistent-id", "Hello?") is None


@pytest.mark.asyncio
async def test_reply_after_thread_removed_mid_flight(session: ReviewSession, store: ThreadStore, sample_source: str) -> None:
    selection = Selection.from_text(sample_source, 4, 5)

    def remove_during_stream(chunk: str, accumulated: str) -> None:
        if store.active_thread_id is not None:
            store.remove_thread(store.active_thread_id)

    outcome = await session.ask(selection, "Explain", on_chunk=remove_during_stream)

    assert outcome.reply is None
    assert len(store) == 0


@pytest.mark.asyncio
async def test_concurrent_streams_keep_separate_text(store: ThreadStore, sample_source: str) -> None:
    backend = MockBackend(latency=(0.0, 0.0), chunk_delay=0.001, rng=random.Random(9))
    session = ReviewSession(store, QueryPipeline(ResponseCache(), ProviderAdapter({ProviderKind.MOCK: backend})))
    overlaps: list[tuple[str, ...]] = []
    mismatches: list[tuple[str | None, str]] = []

    def make_observer(label: str):
        def observe(chunk: str, accumulated: str) -> None:
            ids = session.streaming_thread_ids
            if len(ids) > 1:
                overlaps.append(ids)
            if accumulated not in {session.streaming_text_for(thread_id) for thread_id in ids}:
                mismatches.append((label, accumulated))
            current = session.streaming_thread_id
            if current is not None and session.streaming_text != session.streaming_text_for(current):
                mismatches.append((current, session.streaming_text))

        return observe

    first, second = await asyncio.gather(
        session.ask(Selection.from_text(sample_source, 4, 5), "First?", stream=True, on_chunk=make_observer("a")),
        session.ask(Selection.from_text(sample_source, 8, 11), "Second?", stream=True, on_chunk=make_observer("b")),
    )

    assert overlaps
    assert mismatches == []
    assert first.thread.id != second.thread.id
    assert first.reply is not None and second.reply is not None
    assert session.streaming_thread_ids == ()
    assert session.streaming_thread_id is None
    assert session.streaming_text == ""
    assert session.is_ai_loading is False
