"""Value types shared by the query pipeline and provider backends."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping

from .errors import QueryError

__all__ = [
    "ChunkCallback",
    "HistoryTurn",
    "QueryRequest",
    "QueryResult",
    "Selection",
    "StreamEvent",
]

ChunkCallback = Callable[[str, str], None]
"""Streaming callback receiving ``(chunk_text, accumulated_text)``."""


@dataclass(slots=True, frozen=True)
class Selection:
    """A contiguous line range of the document plus its extracted text.

    Lines are 1-based and inclusive. ``is_empty`` defaults to whether the text
    holds anything other than whitespace.
    """

    start_line: int
    end_line: int
    text: str
    is_empty: bool | None = None

    def __post_init__(self) -> None:
        if self.start_line < 1:
            raise ValueError(f"start_line must be >= 1 (got {self.start_line})")
        if self.end_line < self.start_line:
            raise ValueError(
                f"end_line must be >= start_line (got {self.start_line}-{self.end_line})"
            )
        if self.is_empty is None:
            object.__setattr__(self, "is_empty", not self.text.strip())

    @classmethod
    def from_text(cls, full_text: str, start_line: int, end_line: int) -> "Selection":
        """Extract ``start_line..end_line`` from ``full_text``."""

        lines = full_text.split("\n")
        end = min(end_line, len(lines))
        text = "\n".join(lines[start_line - 1 : end])
        return cls(start_line=start_line, end_line=end_line, text=text)

    @property
    def line_label(self) -> str:
        return f"{self.start_line}-{self.end_line}"


@dataclass(slots=True, frozen=True)
class HistoryTurn:
    """One prior conversation turn replayed to the provider."""

    role: str
    content: str

    def to_chat_param(self) -> dict[str, str]:
        role = "assistant" if self.role in {"ai", "assistant"} else "user"
        return {"role": role, "content": self.content}


@dataclass(slots=True, frozen=True)
class QueryRequest:
    """Everything a provider needs to answer one question."""

    selection: Selection
    full_text: str
    question: str = ""
    history: tuple[HistoryTurn, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "history", tuple(self.history))


@dataclass(slots=True)
class StreamEvent:
    """Normalized representation of streaming deltas emitted by backends."""

    type: str
    content: str | None = None
    usage: Mapping[str, Any] | None = None
    confidence: float | None = None


@dataclass(slots=True, frozen=True)
class QueryResult:
    """Outcome of a single AI query, successful or not."""

    success: bool
    text: str = ""
    provider_id: str = ""
    model_id: str = ""
    usage: Mapping[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    cached: bool = False
    mock: bool = False
    confidence: float | None = None

    @classmethod
    def failure(cls, error: QueryError, *, provider_id: str = "", model_id: str = "") -> "QueryResult":
        return cls(
            success=False,
            provider_id=provider_id,
            model_id=model_id,
            error=error.message,
            error_code=error.error_code,
        )

    def with_cached(self) -> "QueryResult":
        """Return a copy annotated as served from the response cache."""

        return replace(self, cached=True)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "text": self.text,
            "provider": self.provider_id,
            "model": self.model_id,
            "cached": self.cached,
            "mock": self.mock,
        }
        if self.usage:
            payload["usage"] = dict(self.usage)
        if self.confidence is not None:
            payload["confidence"] = self.confidence
        if not self.success:
            payload["error"] = self.error
            payload["error_code"] = self.error_code
        return payload

