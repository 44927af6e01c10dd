"""Resolution of the timestamp column used to filter backfill windows.

Priority, first match wins:

1. explicit per-invocation override (``--time-column``),
2. per-table schema configuration (``backfill.time_column``),
3. the globally configured default (``defaults.time_column``),
4. auto-detection over the table's ordering key, then a fixed list of common
   timestamp column names.  Only date/time typed columns qualify.

Everything here is a pure function of its arguments.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel

from backfill_engine.errors import NoTimeColumnFoundError
from backfill_engine.models.schema import TableMetadata

COMMON_TIME_COLUMN_NAMES: tuple[str, ...] = (
    "created_at",
    "timestamp",
    "ingested_at",
    "event_time",
    "event_at",
    "occurred_at",
)

_WRAPPER = re.compile(r"^(?:Nullable|LowCardinality)\((.*)\)$")
_DATETIME_TYPE = re.compile(r"^(?:Date|Date32|DateTime|DateTime64)(?:\(.*\))?$")


class TimeColumnCandidate(BaseModel):
    """A column that auto-detection would accept, with where it was found."""

    name: str
    type: str
    source: Literal["order_by", "column_scan"]


def is_datetime_type(type_name: str) -> bool:
    """Return True for ``Date``/``DateTime`` family types, unwrapping modifiers."""
    value = type_name.strip()
    while True:
        match = _WRAPPER.match(value)
        if match is None:
            break
        value = match.group(1).strip()
    return bool(_DATETIME_TYPE.match(value))


def detect_time_column_candidates(table: TableMetadata) -> list[TimeColumnCandidate]:
    """List auto-detectable time columns in priority order."""
    candidates: list[TimeColumnCandidate] = []
    seen: set[str] = set()

    for key in table.order_by:
        col = table.column(key)
        if col is not None and col.name not in seen and is_datetime_type(col.type):
            candidates.append(TimeColumnCandidate(name=col.name, type=col.type, source="order_by"))
            seen.add(col.name)

    for name in COMMON_TIME_COLUMN_NAMES:
        col = table.column(name)
        if col is not None and col.name not in seen and is_datetime_type(col.type):
            candidates.append(TimeColumnCandidate(name=col.name, type=col.type, source="column_scan"))
            seen.add(col.name)

    return candidates


def resolve_time_column(
    explicit: str | None,
    schema_table_config: str | None,
    global_default: str | None,
    table: TableMetadata | None,
) -> str:
    """Pick the time column for a backfill.

    Raises
    ------
    NoTimeColumnFoundError
        When no layer yields a column.
    """
    for value in (explicit, schema_table_config, global_default):
        if value is not None and value.strip():
            return value.strip()

    if table is not None:
        candidates = detect_time_column_candidates(table)
        if candidates:
            return candidates[0].name

    where = f" for {table.qualified}" if table is not None else ""
    raise NoTimeColumnFoundError(
        f"No time column found{where}. Pass --time-column, set backfill.time_column on the table, "
        "or configure defaults.time_column."
    )
