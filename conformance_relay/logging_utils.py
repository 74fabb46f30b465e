# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Log output configuration for relay processes.

Provides :class:`RelayJsonFormatter`, a :class:`logging.Formatter` that
serializes records as single-line JSON objects including every ``extra``
field (the relay attaches ``test_name``, ``outcome`` and ``duration_ms`` to
its per-request records), and :func:`configure_logging`, which points the
``conformance_relay`` logger hierarchy at stderr.  stdout is reserved for
frames.

This module is **not** auto-imported by ``conformance_relay``; import it
explicitly::

    from conformance_relay.logging_utils import RelayJsonFormatter
"""

from __future__ import annotations

import json
import logging
import sys
from enum import StrEnum
from typing import TextIO

from conformance_relay._debug import INVOKE_THREAD_PREFIX

__all__ = ["LogFormat", "RelayJsonFormatter", "configure_logging"]

# Attribute names every LogRecord has; anything else came in through ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset(
    {"timestamp", "level", "logger", "message", "test_name", "outcome", "exception", "stack_info"}
)

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class LogFormat(StrEnum):
    """Output format for relay log records."""

    text = "text"
    json = "json"


class RelayJsonFormatter(logging.Formatter):
    """One JSON object per line, keyed for grepping a relay run by test case.

    Every line carries ``timestamp``, ``level``, ``logger``, ``message``,
    ``test_name`` and ``outcome``; the last two are ``null`` outside a test
    case.  A record without an explicit ``test_name`` that was logged on a
    watchdog invocation thread (a bridge complaining about its worker, say)
    is attributed to the test case that thread is running.  Remaining
    ``extra`` fields follow; they cannot overwrite the fixed keys.
    ``exception`` and ``stack_info`` appear when the record has them, and
    values JSON cannot represent are rendered with ``str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        extra = {k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS}
        test_name = extra.pop("test_name", None)
        thread_name = record.threadName or ""
        if test_name is None and thread_name.startswith(INVOKE_THREAD_PREFIX):
            test_name = thread_name[len(INVOKE_THREAD_PREFIX) :]
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "test_name": test_name,
            "outcome": extra.pop("outcome", None),
            **{k: v for k, v in extra.items() if k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(
    level: int | str = logging.WARNING,
    fmt: LogFormat = LogFormat.text,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Attach a stderr handler to the ``conformance_relay`` logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        level: Level for the ``conformance_relay`` logger.
        fmt: ``text`` for human-readable lines, ``json`` for
            :class:`RelayJsonFormatter` output.
        stream: Destination; defaults to ``sys.stderr``.

    Returns:
        The installed handler.

    """
    logger = logging.getLogger("conformance_relay")
    for existing in list(logger.handlers):
        if getattr(existing, "_relay_handler", False):
            logger.removeHandler(existing)
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(RelayJsonFormatter() if fmt == LogFormat.json else logging.Formatter(_TEXT_FORMAT))
    handler._relay_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    return handler
