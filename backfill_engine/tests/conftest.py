"""Shared fixtures for backfill engine tests.

``FakeStoreClient`` stands in for ClickHouse: it records every statement with
its settings and fails chunks on demand, keyed by the chunk index found in the
statement header.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from backfill_engine.config import BackfillSettings
from backfill_engine.models.plan import TargetDescriptor, TimeWindow
from backfill_engine.models.schema import ColumnInfo, MaterializedViewMetadata, SchemaCatalog, TableMetadata
from backfill_engine.planner.plan_builder import build_plan
from backfill_engine.state.checkpoint_store import FileCheckpointStore

_CHUNK_HEADER = re.compile(r"chunk=(\d+)")


class FakeStoreClient:
    """In-memory store client.

    Parameters
    ----------
    failures:
        Chunk index -> number of attempts that raise before succeeding.
    rows:
        Value returned as the written-row count of a successful statement.
    on_execute:
        Called with ``(chunk_index, sql)`` before each statement is handled.
    """

    def __init__(
        self,
        failures: dict[int, int] | None = None,
        rows: int | None = 10,
        on_execute: Callable[[int, str], None] | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.rows = rows
        self.on_execute = on_execute
        self.statements: list[tuple[str, dict[str, Any]]] = []
        self.queries: list[str] = []
        self.closed = False

    def execute(self, sql: str, settings: dict[str, Any] | None = None) -> int | None:
        match = _CHUNK_HEADER.search(sql)
        index = int(match.group(1)) if match else -1
        self.statements.append((sql, dict(settings or {})))
        if self.on_execute is not None:
            self.on_execute(index, sql)
        remaining = self.failures.get(index, 0)
        if remaining:
            self.failures[index] = remaining - 1
            raise RuntimeError(f"Code: 241. Memory limit exceeded on chunk {index}")
        return self.rows

    def query(self, sql: str, settings: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self.queries.append(sql)
        return []

    def close(self) -> None:
        self.closed = True

    def executed_chunks(self) -> list[int]:
        return [int(_CHUNK_HEADER.search(sql).group(1)) for sql, _ in self.statements]  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Catalog fixtures
# ---------------------------------------------------------------------------


def events_table(**overrides: Any) -> TableMetadata:
    values: dict[str, Any] = {
        "database": "analytics",
        "name": "events",
        "columns": [
            ColumnInfo(name="event_time", type="DateTime64(3, 'UTC')"),
            ColumnInfo(name="user_id", type="UInt64"),
            ColumnInfo(name="kind", type="LowCardinality(String)"),
        ],
        "order_by": ["event_time", "user_id"],
    }
    values.update(overrides)
    return TableMetadata(**values)


@pytest.fixture()
def table_catalog() -> SchemaCatalog:
    """A single table that is not fed by any materialized view."""
    return SchemaCatalog(tables=[events_table()])


@pytest.fixture()
def mv_catalog() -> SchemaCatalog:
    """``analytics.events`` feeding ``analytics.events_hourly`` through a view."""
    return SchemaCatalog(
        tables=[
            events_table(),
            TableMetadata(
                database="analytics",
                name="events_hourly",
                columns=[
                    ColumnInfo(name="hour", type="DateTime"),
                    ColumnInfo(name="events", type="UInt64"),
                ],
                order_by=["hour"],
            ),
        ],
        materialized_views=[
            MaterializedViewMetadata(
                database="analytics",
                name="events_hourly_mv",
                to_database="analytics",
                to_table="events_hourly",
                select_sql=(
                    "SELECT toStartOfHour(event_time) AS hour, count() AS events "
                    "FROM analytics.events GROUP BY hour"
                ),
            )
        ],
    )


# ---------------------------------------------------------------------------
# Plans, stores, clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def window() -> TimeWindow:
    """13 hours, so 6h chunks leave a clamped 1h tail."""
    return TimeWindow(
        start=datetime(2025, 1, 1, 0, 0, tzinfo=UTC),
        end=datetime(2025, 1, 1, 13, 0, tzinfo=UTC),
    )


@pytest.fixture()
def table_plan(table_catalog, window):
    return build_plan(TargetDescriptor.parse("analytics.events"), window, 6, None, table_catalog)


@pytest.fixture()
def mv_plan(mv_catalog, window):
    return build_plan(TargetDescriptor.parse("analytics.events_hourly"), window, 6, None, mv_catalog)


@pytest.fixture()
def store(tmp_path) -> FileCheckpointStore:
    return FileCheckpointStore(tmp_path / "state")


@pytest.fixture()
def make_client() -> type[FakeStoreClient]:
    return FakeStoreClient


@pytest.fixture()
def fixed_clock() -> Callable[[], datetime]:
    now = datetime(2025, 1, 2, 9, 30, tzinfo=UTC)
    return lambda: now


@pytest.fixture()
def settings(tmp_path) -> BackfillSettings:
    """Settings rooted in *tmp_path* with fast, deterministic retries."""
    return BackfillSettings.model_validate(
        {
            "state_dir": str(tmp_path / "state"),
            "defaults": {"max_retries_per_chunk": 3, "retry_delay_ms": 1000, "max_retry_delay_ms": 60000},
        }
    )
