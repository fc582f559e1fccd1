"""Logging setup for Marginalia hosts.

Records go to a rotating ``marginalia.log`` file and, optionally, to stderr.
Anything that looks like a provider API key is masked before it is written.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = ["SecretMaskingFilter", "get_log_path", "resolve_level", "setup_logging"]

LOG_FILE_NAME = "marginalia.log"
_DEFAULT_LOG_DIR = Path.home() / ".marginalia" / "logs"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_KEY_PATTERN = re.compile(r"\b(sk-(?:ant-)?[A-Za-z0-9_\-]{4})[A-Za-z0-9_\-]{8,}")

_state: dict[str, Path | None] = {"log_path": None}


class SecretMaskingFilter(logging.Filter):
    """Masks ``sk-...`` style API keys in formatted log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _KEY_PATTERN.sub(r"\1…", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def resolve_level(level: int | str | None = None) -> int:
    """Turn ``level`` or ``MARGINALIA_LOG_LEVEL`` into a numeric level (INFO by default)."""

    candidate = level if level is not None else os.environ.get("MARGINALIA_LOG_LEVEL")
    if candidate is None or candidate == "":
        return logging.INFO
    if isinstance(candidate, int):
        return candidate
    numeric = logging.getLevelName(str(candidate).strip().upper())
    return numeric if isinstance(numeric, int) else logging.INFO


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the file (and optional console) handlers on the root logger.

    Repeated calls are no-ops unless ``force`` is set; the log file path is
    returned either way.
    """

    current = _state["log_path"]
    if current is not None and not force:
        return current

    numeric_level = resolve_level(level)
    directory = Path(log_dir or os.environ.get("MARGINALIA_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    masking = SecretMaskingFilter()
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(masking)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    _state["log_path"] = log_path
    return log_path


def get_log_path() -> Path | None:
    """Path of the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _state["log_path"]
