"""Live schema introspection from ClickHouse system tables.

Builds a :class:`SchemaCatalog` from ``system.tables`` and ``system.columns``
so plans can be built without a schema file.  Row parsing is kept separate
from querying: :func:`build_catalog` works on pre-fetched rows and is what
the tests exercise.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from backfill_engine.executor.base import StoreClient
from backfill_engine.executor.retry import RetryConfig, retry_with_backoff
from backfill_engine.models.schema import ColumnInfo, MaterializedViewMetadata, SchemaCatalog, TableMetadata

logger = logging.getLogger(__name__)

SYSTEM_DATABASES = ("system", "information_schema", "INFORMATION_SCHEMA")

_MV_TO_CLAUSE = re.compile(
    r"\bMATERIALIZED\s+VIEW\b.*?\bTO\s+`?(?P<db>[A-Za-z0-9_]+)`?\.`?(?P<table>[A-Za-z0-9_]+)`?",
    re.IGNORECASE | re.DOTALL,
)
_PLAIN_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _database_filter(databases: list[str] | None) -> str:
    if databases:
        return "database IN (" + ", ".join(_quote_literal(d) for d in sorted(set(databases))) + ")"
    return "database NOT IN (" + ", ".join(_quote_literal(d) for d in SYSTEM_DATABASES) + ")"


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------


def parse_sorting_key(sorting_key: str) -> list[str]:
    """Plain column names in a ``sorting_key`` expression, in order.

    Expressions such as ``toStartOfHour(ts)`` are skipped because they do not
    name a column directly.
    """
    keys: list[str] = []
    for part in (sorting_key or "").split(","):
        name = part.strip().strip("`")
        if name and _PLAIN_KEY.match(name):
            keys.append(name)
    return keys


def parse_mv_destination(create_query: str) -> tuple[str, str] | None:
    """Return ``(database, table)`` from a view's ``TO db.table`` clause."""
    match = _MV_TO_CLAUSE.search(create_query or "")
    if match is None:
        return None
    return match.group("db"), match.group("table")


def build_catalog(table_rows: list[dict[str, Any]], column_rows: list[dict[str, Any]]) -> SchemaCatalog:
    """Assemble a catalog from ``system.tables`` and ``system.columns`` rows.

    Parameters
    ----------
    table_rows:
        Rows with ``database``, ``name``, ``engine``, ``sorting_key``,
        ``as_select`` and ``create_table_query``.
    column_rows:
        Rows with ``database``, ``table``, ``name``, ``type`` and
        ``position``.
    """
    columns_by_table: dict[tuple[str, str], list[dict[str, Any]]] = {}
    for row in column_rows:
        columns_by_table.setdefault((row["database"], row["table"]), []).append(row)

    tables: list[TableMetadata] = []
    views: list[MaterializedViewMetadata] = []

    for row in table_rows:
        database, name, engine = row["database"], row["name"], row.get("engine") or ""

        if engine == "MaterializedView":
            destination = parse_mv_destination(row.get("create_table_query") or "")
            select_sql = (row.get("as_select") or "").strip()
            if destination is None or not select_sql:
                logger.debug("Skipping materialized view %s.%s without a TO table", database, name)
                continue
            views.append(
                MaterializedViewMetadata(
                    database=database,
                    name=name,
                    to_database=destination[0],
                    to_table=destination[1],
                    select_sql=select_sql,
                )
            )
            continue

        if engine in ("View", "Dictionary"):
            continue

        col_rows = sorted(columns_by_table.get((database, name), []), key=lambda r: r.get("position", 0))
        tables.append(
            TableMetadata(
                database=database,
                name=name,
                columns=[ColumnInfo(name=r["name"], type=r["type"]) for r in col_rows],
                order_by=parse_sorting_key(row.get("sorting_key") or ""),
            )
        )

    tables.sort(key=lambda t: t.qualified)
    views.sort(key=lambda v: v.qualified)
    return SchemaCatalog(tables=tables, materialized_views=views)


# ---------------------------------------------------------------------------
# Querying
# ---------------------------------------------------------------------------


def introspect_catalog(
    client: StoreClient,
    databases: list[str] | None = None,
    *,
    retry: RetryConfig | None = None,
) -> SchemaCatalog:
    """Read table and view metadata for *databases* (all user databases if None)."""
    where = _database_filter(databases)
    retry = retry or RetryConfig()

    table_rows = retry_with_backoff(
        lambda: client.query(
            "SELECT database, name, engine, sorting_key, as_select, create_table_query "
            f"FROM system.tables WHERE is_temporary = 0 AND {where}"
        ),
        retry,
    )
    column_rows = retry_with_backoff(
        lambda: client.query(f"SELECT database, table, name, type, position FROM system.columns WHERE {where}"),
        retry,
    )

    catalog = build_catalog(table_rows, column_rows)
    logger.info(
        "Introspected %d table(s) and %d materialized view(s)",
        len(catalog.tables),
        len(catalog.materialized_views),
    )
    return catalog
