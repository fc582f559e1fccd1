"""In-memory thread store backed by a persistence port."""

from __future__ import annotations

import logging
import random
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator

from ..ai.errors import NotFoundError
from ..services.persistence import PersistencePort, WorkspaceSnapshot
from ..services.settings import AISettings
from .models import Message, MessageRole, Thread, ThreadStatus, new_id, pick_thread_color

__all__ = ["ThreadStore"]

LOGGER = logging.getLogger(__name__)

_MUTABLE_FIELDS = frozenset({"status", "anchor_text", "color_tag"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ThreadStore:
    """Owns threads, their messages and the active-thread pointer.

    Every operation is synchronous. Operations that reference an unknown
    thread id are silent no-ops: a thread may be removed while an AI reply
    for it is still in flight. Each mutation writes a full snapshot through
    the injected :class:`PersistencePort` when one is configured.
    """

    def __init__(
        self,
        port: PersistencePort | None = None,
        *,
        snapshot: WorkspaceSnapshot | None = None,
        clock: Callable[[], datetime] = _utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._port = port
        self._clock = clock
        self._rng = rng
        self._threads: dict[str, Thread] = {}
        self._active_thread_id: str | None = None
        self._ai_settings = AISettings()
        self._document_text = ""
        self._document_language = "plaintext"
        if snapshot is not None:
            self._hydrate(snapshot)

    @classmethod
    def from_port(cls, port: PersistencePort, **kwargs: Any) -> "ThreadStore":
        """Build a store hydrated from whatever ``port`` has saved."""

        return cls(port, snapshot=port.load(), **kwargs)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def threads(self) -> list[Thread]:
        return list(self._threads.values())

    @property
    def active_thread_id(self) -> str | None:
        return self._active_thread_id

    @property
    def active_thread(self) -> Thread | None:
        if self._active_thread_id is None:
            return None
        return self._threads.get(self._active_thread_id)

    @property
    def ai_settings(self) -> AISettings:
        return self._ai_settings

    @property
    def document_text(self) -> str:
        return self._document_text

    @property
    def document_language(self) -> str:
        return self._document_language

    def get_thread(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def require_thread(self, thread_id: str) -> Thread:
        """Like :meth:`get_thread` but raises :class:`NotFoundError` for unknown ids."""

        thread = self._threads.get(thread_id)
        if thread is None:
            raise NotFoundError(message=f"Thread {thread_id} not found.", thread_id=thread_id)
        return thread

    def find_threads_overlapping(self, start_line: int, end_line: int) -> list[Thread]:
        """Return threads whose range intersects ``[start_line, end_line]``, by start line."""

        matches = [thread for thread in self._threads.values() if thread.overlaps(start_line, end_line)]
        return sorted(matches, key=lambda thread: thread.start_line)

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._threads

    def __iter__(self) -> Iterator[Thread]:
        return iter(list(self._threads.values()))

    # ------------------------------------------------------------------
    # Thread lifecycle
    # ------------------------------------------------------------------

    def create_thread(
        self,
        start_line: int,
        end_line: int,
        anchor_text: str,
        initial_messages: Iterable[Message] = (),
        *,
        color_tag: str | None = None,
    ) -> Thread:
        """Create a thread and make it the active one."""

        now = self._clock()
        thread = Thread(
            id=new_id("thread"),
            start_line=start_line,
            end_line=end_line,
            anchor_text=anchor_text,
            messages=list(initial_messages),
            status=ThreadStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            color_tag=color_tag or pick_thread_color(self._rng),
        )
        self._threads[thread.id] = thread
        self._active_thread_id = thread.id
        LOGGER.debug("Created thread %s for %s", thread.id, thread.line_label)
        self._persist()
        return thread

    def append_message(self, thread_id: str, content: str, role: MessageRole | str) -> Message | None:
        """Append a message; returns ``None`` when the thread no longer exists."""

        thread = self._threads.get(thread_id)
        if thread is None:
            LOGGER.debug("append_message ignored for missing thread %s", thread_id)
            return None
        message = Message.create(content, role, timestamp=self._clock())
        thread.messages.append(message)
        self._touch(thread)
        self._persist()
        return message

    def update_thread(self, thread_id: str, **changes: Any) -> Thread | None:
        """Merge ``changes`` into the thread and refresh ``updated_at``.

        Only ``status``, ``anchor_text`` and ``color_tag`` may change.
        """

        immutable = sorted(set(changes) - _MUTABLE_FIELDS)
        if immutable:
            raise ValueError(f"Thread field(s) cannot be updated: {', '.join(immutable)}")
        thread = self._threads.get(thread_id)
        if thread is None:
            LOGGER.debug("update_thread ignored for missing thread %s", thread_id)
            return None
        if "status" in changes:
            thread.status = ThreadStatus(changes["status"])
        if "anchor_text" in changes:
            thread.anchor_text = str(changes["anchor_text"])
        if "color_tag" in changes:
            thread.color_tag = str(changes["color_tag"])
        self._touch(thread)
        self._persist()
        return thread

    def remove_thread(self, thread_id: str) -> None:
        """Delete a thread and its messages; clears the active pointer if needed."""

        if self._threads.pop(thread_id, None) is None:
            LOGGER.debug("remove_thread ignored for missing thread %s", thread_id)
            return
        if self._active_thread_id == thread_id:
            self._active_thread_id = None
        self._persist()

    def set_active_thread(self, thread_id: str | None) -> None:
        if thread_id is not None and thread_id not in self._threads:
            LOGGER.debug("set_active_thread ignored for missing thread %s", thread_id)
            return
        self._active_thread_id = thread_id
        self._persist()

    def clear_active_thread(self) -> None:
        self.set_active_thread(None)

    # ------------------------------------------------------------------
    # Workspace state
    # ------------------------------------------------------------------

    def set_document(self, text: str, language: str | None = None) -> None:
        self._document_text = text
        if language:
            self._document_language = language
        self._persist()

    def update_ai_settings(self, settings: AISettings) -> None:
        self._ai_settings = settings
        self._persist()

    def snapshot(self) -> WorkspaceSnapshot:
        return WorkspaceSnapshot(
            threads=[replace(thread, messages=list(thread.messages)) for thread in self._threads.values()],
            active_thread_id=self._active_thread_id,
            ai_settings=self._ai_settings,
            document_text=self._document_text,
            document_language=self._document_language,
        )

    def save(self) -> None:
        self._persist()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _touch(self, thread: Thread) -> None:
        thread.updated_at = max(self._clock(), thread.updated_at)

    def _persist(self) -> None:
        if self._port is None:
            return
        try:
            self._port.save(self.snapshot())
        except OSError as exc:
            LOGGER.warning("Failed to persist review workspace: %s", exc)

    def _hydrate(self, snapshot: WorkspaceSnapshot) -> None:
        self._threads = {thread.id: thread for thread in snapshot.threads}
        active = snapshot.active_thread_id
        self._active_thread_id = active if active in self._threads else None
        self._ai_settings = snapshot.ai_settings
        self._document_text = snapshot.document_text
        self._document_language = snapshot.document_language
        LOGGER.debug("Hydrated thread store with %d thread(s)", len(self._threads))
