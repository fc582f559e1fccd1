"""Thread and message data models."""

from __future__ import annotations

import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

__all__ = [
    "THREAD_COLORS",
    "Message",
    "MessageRole",
    "Thread",
    "ThreadStatus",
    "new_id",
    "pick_thread_color",
]

THREAD_COLORS: tuple[str, ...] = (
    "#3b82f6",  # blue
    "#10b981",  # green
    "#f59e0b",  # amber
    "#ef4444",  # red
    "#8b5cf6",  # purple
    "#ec4899",  # pink
    "#14b8a6",  # teal
)


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a random identifier such as ``thread-1f2e3d4c5b6a``."""

    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def pick_thread_color(rng: random.Random | None = None) -> str:
    return (rng or random).choice(THREAD_COLORS)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _utcnow()
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return _utcnow()


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    AI = "ai"

    @property
    def label(self) -> str:
        return "User" if self is MessageRole.USER else "AI"


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat entry owned by a :class:`Thread`."""

    id: str
    content: str
    role: MessageRole
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", MessageRole(self.role))

    @classmethod
    def create(cls, content: str, role: MessageRole | str, *, timestamp: datetime | None = None) -> "Message":
        return cls(id=new_id("msg"), content=content, role=MessageRole(role), timestamp=timestamp or _utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "role": self.role.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(payload.get("id") or new_id("msg")),
            content=str(payload.get("content", "")),
            role=MessageRole(payload.get("role", MessageRole.USER.value)),
            timestamp=_parse_timestamp(payload.get("timestamp")),
        )


@dataclass(slots=True)
class Thread:
    """A conversation anchored to a fixed, inclusive line range.

    The range never moves after creation; edits to the underlying document
    can leave it pointing at different code.
    """

    id: str
    start_line: int
    end_line: int
    anchor_text: str
    messages: list[Message] = field(default_factory=list)
    status: ThreadStatus = ThreadStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    color_tag: str = THREAD_COLORS[0]

    def __post_init__(self) -> None:
        if self.start_line < 1 or self.end_line < self.start_line:
            raise ValueError(f"Invalid thread range {self.start_line}-{self.end_line}")
        self.status = ThreadStatus(self.status)

    @property
    def line_label(self) -> str:
        if self.start_line == self.end_line:
            return f"Line {self.start_line}"
        return f"Lines {self.start_line}-{self.end_line}"

    @property
    def preview(self) -> str:
        first_line = self.anchor_text.strip().splitlines()[0] if self.anchor_text.strip() else ""
        return first_line if len(first_line) <= 60 else f"{first_line[:57]}..."

    def overlaps(self, start_line: int, end_line: int) -> bool:
        return self.start_line <= end_line and self.end_line >= start_line

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "anchor_text": self.anchor_text,
            "messages": [message.to_dict() for message in self.messages],
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "color_tag": self.color_tag,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Thread":
        messages_payload = payload.get("messages") or []
        created_at = _parse_timestamp(payload.get("created_at"))
        updated_at = _parse_timestamp(payload.get("updated_at", created_at))
        return cls(
            id=str(payload.get("id") or new_id("thread")),
            start_line=int(payload.get("start_line", 1)),
            end_line=int(payload.get("end_line", payload.get("start_line", 1))),
            anchor_text=str(payload.get("anchor_text", "")),
            messages=[Message.from_dict(item) for item in messages_payload if isinstance(item, Mapping)],
            status=ThreadStatus(payload.get("status", ThreadStatus.ACTIVE.value)),
            created_at=created_at,
            updated_at=max(created_at, updated_at),
            color_tag=str(payload.get("color_tag") or THREAD_COLORS[0]),
        )
