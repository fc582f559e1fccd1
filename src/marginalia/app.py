"""Command-line bootstrap for the Marginalia review engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Sequence, TextIO, get_origin, get_type_hints

from .ai.ai_types import Selection
from .ai.cache import ResponseCache
from .ai.client import ProviderAdapter
from .ai.errors import NotFoundError
from .ai.pipeline import QueryPipeline, format_result
from .ai.prompts import DEFAULT_QUESTION
from .services.persistence import JsonFilePersistence
from .services.review_session import AskOutcome, ReviewSession
from .services.settings import AISettings, apply_env_overrides
from .threads.export import export_filename, export_thread_text
from .threads.models import ThreadStatus
from .threads.store import ThreadStore
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the CLI."""

    level = logging.DEBUG if debug else logging.WARNING
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def build_session(store: ThreadStore, *, adapter: ProviderAdapter | None = None) -> ReviewSession:
    pipeline = QueryPipeline(ResponseCache(), adapter or ProviderAdapter())
    return ReviewSession(store, pipeline)


def main(
    argv: Sequence[str] | None = None,
    *,
    adapter: ProviderAdapter | None = None,
    stdout: TextIO | None = None,
) -> int:
    """Entry point invoked by the ``marginalia`` console script."""

    out = stdout or sys.stdout
    args = _parse_cli_args(argv)
    configure_logging(args.debug or _env_flag("MARGINALIA_DEBUG"))

    state_path = args.state or os.environ.get("MARGINALIA_STATE_PATH")
    port = JsonFilePersistence(Path(state_path).expanduser() if state_path else None)
    store = ThreadStore.from_port(port)

    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2
    saved_overrides = bool(overrides)
    if saved_overrides:
        api_keys = overrides.pop("api_keys", None) or {}
        updated = store.ai_settings.merged(**overrides)
        for provider, key in api_keys.items():
            updated = updated.with_api_key(provider, key)
        store.update_ai_settings(updated)

    effective = apply_env_overrides(store.ai_settings)
    if args.command is None:
        if args.dump_settings:
            _dump_settings(effective, port, out)
            return 0
        if saved_overrides:
            out.write(f"Settings saved to {port.path}\n")
            return 0
        print("No command given; try --help.", file=sys.stderr)
        return 2

    handler = _COMMANDS[args.command]
    return handler(args, store, effective, adapter, out)


def _cmd_ask(args: argparse.Namespace, store: ThreadStore, settings: AISettings, adapter, out: TextIO) -> int:
    path = Path(args.file).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"Unable to read {path}: {exc}", file=sys.stderr)
        return 1
    start, end = _parse_line_range(args.lines)
    try:
        selection = Selection.from_text(text, start, end)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    if selection.is_empty:
        print("Select code to ask the AI.", file=sys.stderr)
        return 2

    store.set_document(text, args.language or _guess_language(path))
    question = args.question or DEFAULT_QUESTION

    async def turn(session: ReviewSession, on_chunk) -> AskOutcome | None:
        return await session.ask(
            selection,
            question,
            stream=args.stream,
            on_chunk=on_chunk,
            settings=_apply_flag_overrides(settings, args),
        )

    return _run_turn(turn, store, adapter, out, stream=args.stream)


def _cmd_reply(args: argparse.Namespace, store: ThreadStore, settings: AISettings, adapter, out: TextIO) -> int:
    try:
        store.require_thread(args.thread_id)
    except NotFoundError as exc:
        print(exc.message, file=sys.stderr)
        return 1

    async def turn(session: ReviewSession, on_chunk) -> AskOutcome | None:
        return await session.reply(
            args.thread_id,
            args.question,
            stream=args.stream,
            on_chunk=on_chunk,
            settings=_apply_flag_overrides(settings, args),
        )

    try:
        return _run_turn(turn, store, adapter, out, stream=args.stream)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 2


def _run_turn(turn, store: ThreadStore, adapter, out: TextIO, *, stream: bool) -> int:
    def on_chunk(chunk: str, _accumulated: str) -> None:
        out.write(chunk)
        out.flush()

    async def runner() -> AskOutcome | None:
        session = build_session(store, adapter=adapter)
        try:
            return await turn(session, on_chunk if stream else None)
        finally:
            await session.pipeline.adapter.aclose()

    outcome = asyncio.run(runner())
    if outcome is None:
        return 1
    result = outcome.result
    if stream and result.success and not result.cached:
        out.write("\n")
    else:
        out.write((outcome.reply.content if outcome.reply else format_result(result).text) + "\n")
    out.write(f"[thread {outcome.thread.id}]\n")
    return 0 if result.success else 1


def _cmd_threads(args: argparse.Namespace, store: ThreadStore, settings: AISettings, adapter, out: TextIO) -> int:
    if args.lines:
        start, end = _parse_line_range(args.lines)
        threads = store.find_threads_overlapping(start, end)
    else:
        threads = sorted(store.threads, key=lambda thread: thread.start_line)
    if not threads:
        out.write("No threads.\n")
        return 0
    for thread in threads:
        marker = "*" if thread.id == store.active_thread_id else " "
        out.write(
            f"{marker} {thread.id}  {thread.line_label:<14} {thread.status.value:<9} "
            f"{len(thread.messages):>3} msg  {thread.preview}\n"
        )
    return 0


def _cmd_export(args: argparse.Namespace, store: ThreadStore, settings: AISettings, adapter, out: TextIO) -> int:
    try:
        thread = store.require_thread(args.thread_id)
    except NotFoundError as exc:
        print(exc.message, file=sys.stderr)
        return 1
    body = export_thread_text(thread, language=store.document_language)
    if args.output:
        target = Path(args.output).expanduser()
        if target.is_dir():
            target = target / export_filename(thread)
        target.write_text(body, encoding="utf-8")
        out.write(f"Exported to {target}\n")
    else:
        out.write(body)
    return 0


def _cmd_remove(args: argparse.Namespace, store: ThreadStore, settings: AISettings, adapter, out: TextIO) -> int:
    store.remove_thread(args.thread_id)
    out.write(f"Removed {args.thread_id}\n")
    return 0


def _cmd_status(args: argparse.Namespace, store: ThreadStore, settings: AISettings, adapter, out: TextIO) -> int:
    if store.update_thread(args.thread_id, status=ThreadStatus(args.status)) is None:
        print(f"Thread {args.thread_id} not found.", file=sys.stderr)
        return 1
    out.write(f"{args.thread_id} -> {args.status}\n")
    return 0


_COMMANDS = {
    "ask": _cmd_ask,
    "reply": _cmd_reply,
    "threads": _cmd_threads,
    "export": _cmd_export,
    "remove": _cmd_remove,
    "status": _cmd_status,
}


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="marginalia",
        description="Ask an AI reviewer about line ranges of a file and keep the answers as threads.",
    )
    parser.add_argument("--state", metavar="PATH", help="Override the default ~/.marginalia/state.json path.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on the console.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective AI settings (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Persist an AI settings override (repeatable).",
    )
    commands = parser.add_subparsers(dest="command")

    ask = commands.add_parser("ask", help="Open a thread on a line range and ask a question.")
    ask.add_argument("file")
    ask.add_argument("--lines", required=True, metavar="A-B")
    ask.add_argument("-q", "--question", default="")
    ask.add_argument("--stream", action="store_true")
    ask.add_argument("--provider")
    ask.add_argument("--model")
    ask.add_argument("--language")

    reply = commands.add_parser("reply", help="Ask a follow-up question on an existing thread.")
    reply.add_argument("thread_id")
    reply.add_argument("-q", "--question", required=True)
    reply.add_argument("--stream", action="store_true")
    reply.add_argument("--provider")
    reply.add_argument("--model")

    listing = commands.add_parser("threads", help="List threads, optionally those overlapping a range.")
    listing.add_argument("--lines", metavar="A-B")

    export = commands.add_parser("export", help="Export a thread as plain text.")
    export.add_argument("thread_id")
    export.add_argument("-o", "--output", metavar="PATH")

    remove = commands.add_parser("remove", help="Delete a thread.")
    remove.add_argument("thread_id")

    status = commands.add_parser("status", help="Change a thread's status.")
    status.add_argument("thread_id")
    status.add_argument("status", choices=[item.value for item in ThreadStatus])

    return parser.parse_args(argv)


def _parse_line_range(value: str) -> tuple[int, int]:
    start_text, _, end_text = value.partition("-")
    try:
        start = int(start_text, 10)
        end = int(end_text, 10) if end_text else start
    except ValueError as exc:
        raise SystemExit(f"Invalid line range '{value}'; expected A-B") from exc
    return start, end


def _apply_flag_overrides(settings: AISettings, args: argparse.Namespace) -> AISettings:
    if getattr(args, "provider", None):
        settings = settings.with_provider(args.provider)
    if getattr(args, "model", None):
        settings = settings.with_model(args.model)
    return settings


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    known = {item.name for item in fields(AISettings)}
    type_hints = get_type_hints(AISettings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key.startswith("api_keys."):
            provider = key.split(".", 1)[1]
            api_keys = dict(overrides.get("api_keys", {}))
            api_keys[provider] = raw_value.strip()
            overrides["api_keys"] = api_keys
            continue
        if key not in known:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    if annotation is int:
        return int(raw_value, 10)
    if annotation is float:
        return float(raw_value)
    if annotation is bool:
        return raw_value.lower() in _TRUE_VALUES
    if get_origin(annotation) is dict:
        try:
            return json.loads(raw_value or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Dict overrides must be valid JSON objects") from exc
    return raw_value


def _dump_settings(settings: AISettings, port: JsonFilePersistence, out: TextIO) -> None:
    output = {
        "settings": settings.redacted(),
        "meta": {
            "path": str(port.path),
            "environment_variables": sorted(name for name in os.environ if name.startswith("MARGINALIA_")),
        },
    }
    json.dump(output, out, indent=2)
    out.write("\n")


def _guess_language(path: Path) -> str:
    return {
        ".py": "python",
        ".js": "javascript",
        ".jsx": "javascript",
        ".ts": "typescript",
        ".tsx": "typescript",
        ".go": "go",
        ".rs": "rust",
        ".java": "java",
        ".rb": "ruby",
        ".md": "markdown",
    }.get(path.suffix.lower(), "plaintext")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
