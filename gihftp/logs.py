"""Structured ``EVENT key=value`` logging on top of the standard logging module."""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

LOGGER_NAME = "gihftp"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

logger = logging.getLogger(LOGGER_NAME)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _log_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "null"
    text = str(value)
    if re.fullmatch(r"[A-Za-z0-9._:/+\-]+", text):
        return text
    return json.dumps(text, ensure_ascii=True)


def format_event(event: str, **fields: object) -> str:
    parts = [event]
    for key, value in fields.items():
        parts.append(f"{key}={_log_value(value)}")
    return " ".join(parts)


def log_event(event: str, level: int = logging.INFO, **fields: object) -> None:
    if logger.isEnabledFor(level):
        logger.log(level, format_event(event, **fields))


def format_exception_message(exc: BaseException) -> str:
    text = str(exc).strip()
    if text:
        return text
    rep = repr(exc).strip()
    if rep and rep != f"{type(exc).__name__}()":
        return rep
    return type(exc).__name__


def parse_log_level(name: str) -> int:
    try:
        return LOG_LEVELS[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"invalid log level: {name} (must be one of {', '.join(sorted(LOG_LEVELS))})"
        ) from None


def configure_logging(level: str = "info", log_file: Optional[Path] = None) -> None:
    """Route the package logger to stdout and, optionally, a per-run log file."""
    logger.setLevel(parse_log_level(level))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    logger.propagate = False
