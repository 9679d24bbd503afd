"""Logging setup for roombot runs.

Call :func:`configure_logging` once at process start; every other module
keeps a module-level ``logger = logging.getLogger(__name__)``.

Every line carries the run id (see :data:`RUN_ID_CTX`) and a millisecond
timestamp in local time, the clock the allocation start time is given in.
Records produced by :func:`roombot.core.events.log_subscriber` also carry
the engine event name, shown as a ``<EVENT_NAME>`` tag in text mode, and
success events are labelled ``SUCCESS`` instead of ``INFO``::

    09:00:00.412 SUCCESS  [a3f2b1c0] roombot.events <CLAIM_SUCCEEDED>: Claimed room R-1

The level and format fall back to ``$LOG_LEVEL`` / ``$LOG_FORMAT`` when not
passed explicitly, the same variables :class:`~roombot.core.settings.Settings`
reads.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime
from typing import Any

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "TextFormatter",
    "RUN_ID_CTX",
    "RunContextFilter",
    "level_label",
]

#: Identifier of the run the current task belongs to; ``"-"`` outside a run.
#: Set by :mod:`roombot.engine.runner` at the start of every run.
RUN_ID_CTX: ContextVar[str] = ContextVar("run_id", default="-")

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS = ("text", "json")

#: Third-party loggers kept at WARNING unless the run is at DEBUG.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite")

_SUCCESS = "SUCCESS"


def level_label(record: logging.LogRecord) -> str:
    """Return ``"SUCCESS"`` for success events, else the record's level name."""
    if getattr(record, "event_level", None) == "success":
        return _SUCCESS
    return record.levelname


def _local_timestamp(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created).astimezone()


class RunContextFilter(logging.Filter):
    """Stamp ``record.run_id`` from :data:`RUN_ID_CTX`.

    Sits on the handler so records propagated from any logger get it.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.run_id = RUN_ID_CTX.get()
        return True


class TextFormatter(logging.Formatter):
    """One human-readable line per record, with the event tag when present."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        ts = _local_timestamp(record)
        event = getattr(record, "event", None)
        line = (
            f"{ts:%H:%M:%S}.{int(record.msecs):03d} "
            f"{level_label(record):<8} [{getattr(record, 'run_id', '-')}] "
            f"{record.name}{f' <{event}>' if event else ''}: {record.getMessage()}"
        )
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for log shippers.

    Shape::

        {"ts": "2030-05-01T09:00:00.412+08:00", "level": "SUCCESS",
         "logger": "roombot.events", "run_id": "a3f2b1c0",
         "message": "Claimed room R-1",
         "event": "CLAIM_SUCCEEDED", "data": {"room_id": "R-1"}}

    ``event`` and ``data`` appear only on engine-event records, ``exc_info``
    only when an exception is attached.  Chinese text is written as is.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "ts": _local_timestamp(record).isoformat(timespec="milliseconds"),
            "level": level_label(record),
            "logger": record.name,
            "run_id": getattr(record, "run_id", RUN_ID_CTX.get()),
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
            payload["data"] = getattr(record, "data", {})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install one stderr handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL (any case).
        fmt: ``"text"`` or ``"json"``.
        force: Replace existing root handlers.  Without it an already
            configured root logger only has its level changed.

    Raises:
        ValueError: For an unknown level or format.
    """
    resolved_level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    resolved_fmt = (fmt or os.environ.get("LOG_FORMAT") or "text").lower()
    if resolved_level not in _LEVELS:
        raise ValueError(
            f"Unknown log level {resolved_level!r}; use one of {', '.join(_LEVELS)}."
        )
    if resolved_fmt not in _FORMATS:
        raise ValueError(f"Unknown log format {resolved_fmt!r}; use 'text' or 'json'.")

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RunContextFilter())
    handler.setFormatter(JsonFormatter() if resolved_fmt == "json" else TextFormatter())
    root.handlers[:] = [handler]

    quiet_level = logging.DEBUG if resolved_level == "DEBUG" else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
