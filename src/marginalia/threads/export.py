"""Export a thread as a human-readable plain-text transcript."""

from __future__ import annotations

from datetime import datetime

from .models import Thread

__all__ = ["export_filename", "export_thread_text"]

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


def _format_timestamp(value: datetime) -> str:
    return value.strftime(_TIMESTAMP_FORMAT).strip()


def export_thread_text(thread: Thread, *, title: str | None = None, language: str | None = None) -> str:
    """Render ``thread`` as plain text. The output is not meant to be re-imported."""

    heading = title or f"Code Review Thread: {thread.line_label}"
    lines = [heading, "=" * len(heading), ""]
    lines.append(f"Lines: {thread.start_line}-{thread.end_line}")
    lines.append(f"Status: {thread.status.value}")
    lines.append(f"Created: {_format_timestamp(thread.created_at)}")
    lines.append(f"Updated: {_format_timestamp(thread.updated_at)}")
    lines.extend(["", "Code:", f"```{language or ''}", thread.anchor_text, "```", ""])

    lines.append(f"Conversation ({len(thread.messages)} message(s)):")
    lines.append("-" * 40)
    if not thread.messages:
        lines.append("(no messages)")
    for message in thread.messages:
        lines.append(f"[{message.role.label}] {_format_timestamp(message.timestamp)}")
        lines.append(message.content)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def export_filename(thread: Thread) -> str:
    return f"thread-lines-{thread.start_line}-{thread.end_line}.txt"
