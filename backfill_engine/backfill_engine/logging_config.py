"""Logging setup for backfill commands.

Two output modes, both on *stderr* so that machine-readable payloads on
*stdout* stay clean:

* plain text (default), one human-readable line per record;
* structured JSON (``structured_logging = true``), one single-line JSON
  object per record so log aggregators can index fields without regex
  parsing.

Output schema per JSON line::

    {
        "timestamp": "2025-05-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "backfill_engine.executor.engine",
        "message": "chunk 3 succeeded",
        "plan_id": "9f3c0d1e2a4b5c6d",   // present when passed via ``extra``
        "chunk_index": 3,                // present when passed via ``extra``
        "exc_info": "Traceback ..."      // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

_CONTEXT_FIELDS = ("plan_id", "run_id", "chunk_index", "attempt")

_TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(*, verbose: bool = False, structured: bool = False) -> None:
    """Install a single stderr handler on the package loggers.

    Calling this repeatedly replaces the previous handler instead of stacking
    duplicates.
    """
    handler = logging.StreamHandler(sys.stderr)
    if structured:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))

    if verbose:
        level = logging.DEBUG
    elif structured:
        level = logging.INFO
    else:
        level = logging.WARNING
    for name in ("backfill_engine", "backfill_cli"):
        pkg_logger = logging.getLogger(name)
        for existing in list(pkg_logger.handlers):
            pkg_logger.removeHandler(existing)
        pkg_logger.addHandler(handler)
        pkg_logger.setLevel(level)
        pkg_logger.propagate = False
