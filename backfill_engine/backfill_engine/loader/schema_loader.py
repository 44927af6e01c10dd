"""Schema file loader.

Reads table and materialized-view metadata from a YAML schema file into a
:class:`SchemaCatalog`.  Expected layout::

    tables:
      - database: analytics
        name: events
        order_by: [event_time, user_id]
        columns:
          - {name: event_time, type: DateTime64(3)}
          - {name: user_id, type: UInt64}
        backfill:
          time_column: event_time        # optional per-table override

    materialized_views:
      - database: analytics
        name: events_hourly_mv
        to: analytics.events_hourly      # database defaults to the view's
        select: |
          SELECT toStartOfHour(event_time) AS hour, count() AS events
          FROM analytics.events
          GROUP BY hour

Columns may also be given as a ``{name: type}`` mapping.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import ValidationError

from backfill_engine.errors import SchemaLoadError
from backfill_engine.models.schema import ColumnInfo, MaterializedViewMetadata, SchemaCatalog, TableMetadata

logger = logging.getLogger(__name__)


def _require_mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise SchemaLoadError(f"{where}: expected a mapping, got {type(value).__name__}.")
    return value


def _parse_columns(raw: Any, where: str) -> list[ColumnInfo]:
    if raw is None:
        return []
    if isinstance(raw, dict):
        return [ColumnInfo(name=str(name), type=str(type_)) for name, type_ in raw.items()]
    if isinstance(raw, list):
        columns = []
        for position, item in enumerate(raw):
            entry = _require_mapping(item, f"{where}.columns[{position}]")
            columns.append(ColumnInfo(name=entry.get("name", ""), type=entry.get("type", "")))
        return columns
    raise SchemaLoadError(f"{where}.columns: expected a list or mapping.")


def _parse_table(raw: Any, position: int) -> TableMetadata:
    where = f"tables[{position}]"
    entry = _require_mapping(raw, where)
    backfill = _require_mapping(entry.get("backfill") or {}, f"{where}.backfill")
    order_by = entry.get("order_by") or []
    if isinstance(order_by, str):
        order_by = [part.strip() for part in order_by.split(",") if part.strip()]
    return TableMetadata(
        database=entry.get("database", ""),
        name=entry.get("name", ""),
        columns=_parse_columns(entry.get("columns"), where),
        order_by=list(order_by),
        time_column=backfill.get("time_column"),
    )


def _parse_view(raw: Any, position: int) -> MaterializedViewMetadata:
    where = f"materialized_views[{position}]"
    entry = _require_mapping(raw, where)
    database = entry.get("database", "")
    destination = str(entry.get("to") or "")
    to_database, dot, to_table = destination.rpartition(".")
    if not dot:
        to_database = database
    if not to_table:
        raise SchemaLoadError(f"{where}: missing 'to' destination table.")
    return MaterializedViewMetadata(
        database=database,
        name=entry.get("name", ""),
        to_database=to_database,
        to_table=to_table,
        select_sql=str(entry.get("select") or ""),
    )


def parse_schema_document(data: Any) -> SchemaCatalog:
    """Convert a parsed schema document into a catalog."""
    if data is None:
        return SchemaCatalog()
    document = _require_mapping(data, "schema")
    try:
        tables = [_parse_table(raw, i) for i, raw in enumerate(document.get("tables") or [])]
        views = [_parse_view(raw, i) for i, raw in enumerate(document.get("materialized_views") or [])]
    except ValidationError as exc:
        raise SchemaLoadError(f"Invalid schema metadata: {exc}") from exc
    return SchemaCatalog(tables=tables, materialized_views=views)


def load_schema_file(path: Path) -> SchemaCatalog:
    """Load a YAML (or JSON) schema file.

    Raises
    ------
    SchemaLoadError
        If the file is missing, unreadable, or malformed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SchemaLoadError(f"Cannot read schema file {path}: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise SchemaLoadError(f"Failed to parse {path}: {exc}") from exc

    catalog = parse_schema_document(data)
    logger.debug(
        "Loaded %d table(s) and %d materialized view(s) from %s",
        len(catalog.tables),
        len(catalog.materialized_views),
        path,
    )
    return catalog
