"""Prompt templates for code review questions.

The user turn always carries a window of surrounding source lines and the
selection itself, each fenced as a code block, followed by the question.
"""

from __future__ import annotations

from typing import Sequence

from .ai_types import QueryRequest, Selection

SYSTEM_PROMPT = (
    "You are an expert code reviewer. Analyze the selected code and provide helpful "
    "insights, suggestions, or explanations."
)
DEFAULT_QUESTION = "Please review this code and provide helpful feedback."
CONTEXT_RADIUS = 5


def context_window(full_text: str, start_line: int, end_line: int, *, radius: int = CONTEXT_RADIUS) -> str:
    """Return ``radius`` lines before ``start_line`` through ``radius`` after ``end_line``.

    The window is clipped to the document bounds.
    """

    lines = full_text.split("\n")
    first = max(0, start_line - 1 - radius)
    last = min(len(lines), end_line + radius)
    return "\n".join(lines[first:last])


def context_prompt(selection: Selection, full_text: str) -> str:
    """Code context plus the fenced selection, without a question."""

    context = context_window(full_text, selection.start_line, selection.end_line)
    return (
        "Here is some code context:\n\n"
        f"```\n{context}\n```\n\n"
        f"The following code is selected (lines {selection.start_line}-{selection.end_line}):\n\n"
        f"```\n{selection.text}\n```"
    )


def question_prompt(question: str | None) -> str:
    cleaned = (question or "").strip()
    return f"Question: {cleaned}" if cleaned else DEFAULT_QUESTION


def user_prompt(selection: Selection, full_text: str, question: str | None = None) -> str:
    return f"{context_prompt(selection, full_text)}\n\n{question_prompt(question)}"


def build_messages(request: QueryRequest) -> list[dict[str, str]]:
    """Assemble the chat transcript sent to a provider.

    Without history the transcript is ``[system, user(context + question)]``.
    With history the first user turn only sets the context, the history is
    replayed verbatim and the new question closes the transcript.
    """

    messages: list[dict[str, str]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    if not request.history:
        messages.append(
            {"role": "user", "content": user_prompt(request.selection, request.full_text, request.question)}
        )
        return messages
    messages.append({"role": "user", "content": context_prompt(request.selection, request.full_text)})
    messages.extend(turn.to_chat_param() for turn in request.history)
    messages.append({"role": "user", "content": question_prompt(request.question)})
    return messages


def split_system(messages: Sequence[dict[str, str]]) -> tuple[str, list[dict[str, str]]]:
    """Separate system instructions and merge consecutive same-role turns.

    Messages-style APIs take the system prompt as a top-level field and expect
    user/assistant turns to alternate.
    """

    system_parts: list[str] = []
    turns: list[dict[str, str]] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            system_parts.append(content)
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1] = {"role": role, "content": f"{turns[-1]['content']}\n\n{content}"}
        else:
            turns.append({"role": role, "content": content})
    return "\n\n".join(system_parts), turns

