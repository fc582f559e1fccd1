"""Coordinates Ask-AI turns between the thread store and the query pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ..ai.ai_types import ChunkCallback, HistoryTurn, QueryResult, Selection
from ..ai.pipeline import QueryPipeline, format_result
from ..threads.models import Message, MessageRole, Thread
from ..threads.store import ThreadStore
from .settings import AISettings

__all__ = ["AskOutcome", "ReviewSession"]

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AskOutcome:
    """Thread touched by an Ask-AI turn and the query result it received."""

    thread: Thread
    result: QueryResult
    reply: Message | None = None


class ReviewSession:
    """Runs AI turns and records both sides of the exchange as thread messages.

    A failed query still produces an assistant message carrying the error
    text so the conversation shows what happened.
    """

    def __init__(self, store: ThreadStore, pipeline: QueryPipeline) -> None:
        self._store = store
        self._pipeline = pipeline
        self._loading: set[str] = set()
        # Partial reply text per thread with a streamed turn in flight.
        self._streaming: dict[str, str] = {}

    @property
    def store(self) -> ThreadStore:
        return self._store

    @property
    def pipeline(self) -> QueryPipeline:
        return self._pipeline

    @property
    def is_ai_loading(self) -> bool:
        return bool(self._loading)

    def is_thread_loading(self, thread_id: str) -> bool:
        return thread_id in self._loading

    @property
    def streaming_thread_ids(self) -> tuple[str, ...]:
        return tuple(self._streaming)

    @property
    def streaming_thread_id(self) -> str | None:
        """Most recently started thread that is still streaming."""

        return next(reversed(self._streaming), None)

    @property
    def streaming_text(self) -> str:
        thread_id = self.streaming_thread_id
        return self._streaming[thread_id] if thread_id is not None else ""

    def streaming_text_for(self, thread_id: str) -> str:
        return self._streaming.get(thread_id, "")

    async def ask(
        self,
        selection: Selection,
        question: str,
        *,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        settings: AISettings | None = None,
    ) -> AskOutcome:
        """Open a new thread on ``selection`` and ask the first question.

        ``settings`` overrides the store's AI settings for this turn only.
        """

        if selection.is_empty:
            raise ValueError("Select code to ask the AI.")
        if not question.strip():
            raise ValueError("Add a question before sending.")

        thread = self._store.create_thread(
            selection.start_line,
            selection.end_line,
            selection.text,
            initial_messages=[Message.create(question, MessageRole.USER)],
        )
        return await self._run_turn(
            thread, selection, question, (), stream=stream, on_chunk=on_chunk, settings=settings
        )

    async def reply(
        self,
        thread_id: str,
        question: str,
        *,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
        settings: AISettings | None = None,
    ) -> AskOutcome | None:
        """Ask a follow-up on an existing thread; ``None`` if the thread is gone."""

        if not question.strip():
            raise ValueError("Add a question before sending.")
        thread = self._store.get_thread(thread_id)
        if thread is None:
            _LOGGER.debug("Follow-up ignored for missing thread %s", thread_id)
            return None
        history = self._history_for(thread.messages)
        selection = Selection(
            start_line=thread.start_line,
            end_line=thread.end_line,
            text=thread.anchor_text,
        )
        self._store.append_message(thread_id, question, MessageRole.USER)
        return await self._run_turn(
            thread, selection, question, history, stream=stream, on_chunk=on_chunk, settings=settings
        )

    async def _run_turn(
        self,
        thread: Thread,
        selection: Selection,
        question: str,
        history: Sequence[HistoryTurn],
        *,
        stream: bool,
        on_chunk: ChunkCallback | None,
        settings: AISettings | None = None,
    ) -> AskOutcome:
        settings = settings or self._store.ai_settings
        full_text = self._store.document_text or selection.text
        self._loading.add(thread.id)
        try:
            if stream or on_chunk is not None:
                self._streaming[thread.id] = ""

                def handle_chunk(chunk: str, accumulated: str) -> None:
                    if thread.id in self._streaming:
                        self._streaming[thread.id] = accumulated
                    if on_chunk is not None:
                        on_chunk(chunk, accumulated)

                result = await self._pipeline.query_streaming(
                    selection, full_text, question, settings, history, handle_chunk
                )
            else:
                result = await self._pipeline.query(selection, full_text, question, settings, history)
        finally:
            self._loading.discard(thread.id)
            self._streaming.pop(thread.id, None)

        formatted = format_result(result)
        reply = self._store.append_message(thread.id, formatted.text, MessageRole.AI)
        if reply is None:
            _LOGGER.info("Thread %s was removed before the AI reply arrived", thread.id)
        return AskOutcome(thread=self._store.get_thread(thread.id) or thread, result=result, reply=reply)

    @staticmethod
    def _history_for(messages: Sequence[Message]) -> tuple[HistoryTurn, ...]:
        return tuple(HistoryTurn(role=message.role.value, content=message.content) for message in messages)
