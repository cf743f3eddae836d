from __future__ import annotations

from pathlib import Path
import logging
from typing import TextIO

import structlog

_LOG_HANDLE: TextIO | None = None


def configure_logging(log_file: Path, level: str = "info") -> None:
    """Send structured log lines to an append-only file for the process lifetime."""
    global _LOG_HANDLE

    log_file.parent.mkdir(parents=True, exist_ok=True)
    if _LOG_HANDLE is not None and not _LOG_HANDLE.closed:
        _LOG_HANDLE.close()
    _LOG_HANDLE = log_file.open("a", encoding="utf-8")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["timestamp", "level", "event"]),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_level_number(level)),
        context_class=dict,
        logger_factory=structlog.WriteLoggerFactory(file=_LOG_HANDLE),
        cache_logger_on_first_use=False,
    )


def _level_number(level: str) -> int:
    number = logging.getLevelName(level.strip().upper())
    return number if isinstance(number, int) else logging.INFO
