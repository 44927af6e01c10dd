"""Unit tests for backfill_engine.planner.time_column."""

from __future__ import annotations

import pytest

from backfill_engine.errors import NoTimeColumnFoundError
from backfill_engine.models.schema import ColumnInfo, TableMetadata
from backfill_engine.planner.time_column import (
    detect_time_column_candidates,
    is_datetime_type,
    resolve_time_column,
)


def _table(columns: dict[str, str], order_by: list[str] | None = None) -> TableMetadata:
    return TableMetadata(
        database="analytics",
        name="events",
        columns=[ColumnInfo(name=n, type=t) for n, t in columns.items()],
        order_by=order_by or [],
    )


# ---------------------------------------------------------------------------
# is_datetime_type
# ---------------------------------------------------------------------------


class TestIsDatetimeType:
    @pytest.mark.parametrize(
        "type_name",
        [
            "Date",
            "Date32",
            "DateTime",
            "DateTime('UTC')",
            "DateTime64(3)",
            "DateTime64(6, 'Europe/Berlin')",
            "Nullable(DateTime)",
            "LowCardinality(Nullable(Date))",
        ],
    )
    def test_accepts_date_family(self, type_name):
        assert is_datetime_type(type_name)

    @pytest.mark.parametrize("type_name", ["String", "UInt64", "Nullable(String)", "DateTimeish", "Array(DateTime)"])
    def test_rejects_other_types(self, type_name):
        assert not is_datetime_type(type_name)


# ---------------------------------------------------------------------------
# detect_time_column_candidates
# ---------------------------------------------------------------------------


class TestDetectCandidates:
    def test_order_by_before_common_names(self):
        table = _table(
            {"created_at": "DateTime", "ts": "DateTime64(3)", "id": "UInt64"},
            order_by=["ts", "id"],
        )
        candidates = detect_time_column_candidates(table)
        assert [c.name for c in candidates] == ["ts", "created_at"]
        assert [c.source for c in candidates] == ["order_by", "column_scan"]

    def test_non_temporal_order_key_is_skipped(self):
        table = _table({"id": "UInt64", "event_time": "DateTime"}, order_by=["id"])
        candidates = detect_time_column_candidates(table)
        assert [c.name for c in candidates] == ["event_time"]

    def test_common_name_with_wrong_type_is_skipped(self):
        table = _table({"timestamp": "String"})
        assert detect_time_column_candidates(table) == []

    def test_no_duplicates(self):
        table = _table({"created_at": "DateTime"}, order_by=["created_at"])
        candidates = detect_time_column_candidates(table)
        assert len(candidates) == 1
        assert candidates[0].source == "order_by"


# ---------------------------------------------------------------------------
# resolve_time_column
# ---------------------------------------------------------------------------


class TestResolveTimeColumn:
    def test_explicit_wins(self):
        table = _table({"event_time": "DateTime"}, order_by=["event_time"])
        assert resolve_time_column("ingested_at", "created_at", "ts", table) == "ingested_at"

    def test_schema_config_before_global_default(self):
        assert resolve_time_column(None, "created_at", "ts", None) == "created_at"

    def test_global_default_before_detection(self):
        table = _table({"event_time": "DateTime"}, order_by=["event_time"])
        assert resolve_time_column(None, None, "ts", table) == "ts"

    def test_blank_values_are_ignored(self):
        table = _table({"event_time": "DateTime"}, order_by=["event_time"])
        assert resolve_time_column("  ", "", None, table) == "event_time"

    def test_detection_fallback(self):
        table = _table({"id": "UInt64", "occurred_at": "DateTime64(3)"})
        assert resolve_time_column(None, None, None, table) == "occurred_at"

    def test_nothing_found_raises(self):
        table = _table({"id": "UInt64", "payload": "String"})
        with pytest.raises(NoTimeColumnFoundError, match="analytics.events"):
            resolve_time_column(None, None, None, table)

    def test_unknown_table_raises(self):
        with pytest.raises(NoTimeColumnFoundError, match="--time-column"):
            resolve_time_column(None, None, None, None)
