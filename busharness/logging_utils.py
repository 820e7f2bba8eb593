# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Log output helpers shared by the harness and the stub service.

:class:`HarnessJsonFormatter` renders records as single-line JSON objects;
everything attached through ``extra`` is carried over.  :func:`configure_logging`
attaches one stderr handler to the ``busharness`` logger tree, which is what
``python -m busharness.stub --log-format json`` does.

This module is not imported by ``busharness`` itself::

    from busharness.logging_utils import HarnessJsonFormatter
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from enum import StrEnum
from typing import TextIO

__all__ = ["LogFormat", "HarnessJsonFormatter", "configure_logging"]

# Attributes every LogRecord carries; anything else came in through ``extra``.
_STANDARD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
}

_OUTPUT_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})

_TEXT_FORMAT = "%(asctime)s %(name)-28s %(levelname)-5s %(message)s"


class LogFormat(StrEnum):
    """Output format for :func:`configure_logging`."""

    text = "text"
    json = "json"


class HarnessJsonFormatter(logging.Formatter):
    """Format log records as one JSON object per line.

    ``timestamp``, ``level``, ``logger`` and ``message`` are always present
    and win over ``extra`` fields of the same name.  *static_fields* are added
    to every record (the stub service tags its records with its bus name);
    per-record ``extra`` values override them.  Values that JSON cannot
    represent are rendered with ``str()``.
    """

    def __init__(self, static_fields: Mapping[str, object] | None = None) -> None:
        """Initialize with fields to add to every record."""
        super().__init__()
        self._static = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        """Return *record* as a JSON line."""
        record.message = record.getMessage()
        extra = {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS and k not in _OUTPUT_KEYS}
        obj: dict[str, object] = {
            **{k: v for k, v in self._static.items() if k not in _OUTPUT_KEYS},
            **extra,
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    level: str = "INFO",
    log_format: LogFormat = LogFormat.text,
    *,
    logger_name: str = "busharness",
    stream: TextIO | None = None,
    static_fields: Mapping[str, object] | None = None,
) -> logging.Handler:
    """Attach a stream handler (stderr by default) to *logger_name* at *level*.

    Returns:
        The handler, so callers can detach it again.

    Raises:
        ValueError: If *level* is not a logging level name.

    """
    levels = logging.getLevelNamesMapping()
    if level.upper() not in levels:
        raise ValueError(f"unknown log level {level!r}")
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    if log_format == LogFormat.json:
        handler.setFormatter(HarnessJsonFormatter(static_fields))
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    logger = logging.getLogger(logger_name)
    logger.setLevel(levels[level.upper()])
    logger.addHandler(handler)
    return handler
