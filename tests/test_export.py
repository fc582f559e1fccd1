"""Tests for plain-text thread export."""

from __future__ import annotations

from datetime import datetime, timezone

from marginalia.threads.export import export_filename, export_thread_text
from marginalia.threads.models import Message, MessageRole, Thread, ThreadStatus

_WHEN = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)


def _thread(**overrides) -> Thread:
    params = {
        "id": "thread-abc",
        "start_line": 3,
        "end_line": 5,
        "anchor_text": "def foo():\n    return 1",
        "created_at": _WHEN,
        "updated_at": _WHEN,
    }
    params.update(overrides)
    return Thread(**params)


def test_export_includes_header_code_and_conversation() -> None:
    thread = _thread(
        messages=[
            Message(id="m1", content="Is this right?", role=MessageRole.USER, timestamp=_WHEN),
            Message(id="m2", content="Yes.", role=MessageRole.AI, timestamp=_WHEN),
        ],
        status=ThreadStatus.RESOLVED,
    )

    text = export_thread_text(thread, language="python")

    lines = text.splitlines()
    assert lines[0] == "Code Review Thread: Lines 3-5"
    assert lines[1] == "=" * len(lines[0])
    assert "Status: resolved" in lines
    assert "Created: 2024-05-06 07:08:09 UTC" in lines
    assert "```python\ndef foo():\n    return 1\n```" in text
    assert "Conversation (2 message(s)):" in lines
    assert "[User] 2024-05-06 07:08:09 UTC" in lines
    assert "[AI] 2024-05-06 07:08:09 UTC" in lines
    assert text.index("Is this right?") < text.index("Yes.")
    assert text.endswith("Yes.\n")


def test_export_of_thread_without_messages() -> None:
    text = export_thread_text(_thread(), title="Custom")

    assert text.startswith("Custom\n======\n")
    assert "(no messages)" in text


def test_export_filename_uses_line_range() -> None:
    assert export_filename(_thread()) == "thread-lines-3-5.txt"
