"""Unit tests for backfill_engine.planner.templates."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from backfill_engine.errors import AmbiguousTimeColumnError, ConfigurationError
from backfill_engine.models.schema import ColumnInfo, MaterializedViewMetadata, SchemaCatalog, TableMetadata
from backfill_engine.planner.templates import (
    output_columns,
    primary_source_table,
    render_chunk_statement,
    resolve_join_qualifier,
    source_tables,
    splice_window_predicate,
)

START = datetime(2025, 1, 1, 0, 0, tzinfo=UTC)
END = datetime(2025, 1, 1, 6, 0, tzinfo=UTC)

LOWER = "toDateTime64('2025-01-01 00:00:00.000', 3, 'UTC')"
UPPER = "toDateTime64('2025-01-01 06:00:00.000', 3, 'UTC')"


def _view(select_sql: str) -> MaterializedViewMetadata:
    return MaterializedViewMetadata(
        database="analytics",
        name="joined_mv",
        to_database="analytics",
        to_table="joined",
        select_sql=select_sql,
    )


def _table(name: str, *columns: str) -> TableMetadata:
    return TableMetadata(
        database="analytics",
        name=name,
        columns=[ColumnInfo(name=c, type="DateTime" if c.endswith("time") else "String") for c in columns],
    )


JOIN_SQL = (
    "SELECT e.user_id, e.event_time AS ts, u.country "
    "FROM analytics.events AS e INNER JOIN analytics.users AS u ON e.user_id = u.id"
)


# ---------------------------------------------------------------------------
# Query inspection
# ---------------------------------------------------------------------------


class TestInspection:
    def test_source_tables_defaults_database(self):
        sql = "SELECT a.x FROM raw_events AS a JOIN other.dim AS d ON a.k = d.k"
        assert source_tables(sql, "analytics") == ["analytics.raw_events", "other.dim"]

    def test_source_tables_union(self):
        sql = "SELECT x FROM db.a UNION ALL SELECT x FROM db.b"
        assert source_tables(sql, "default") == ["db.a", "db.b"]

    def test_primary_source_table(self):
        assert primary_source_table(JOIN_SQL, "default") == "analytics.events"

    def test_output_columns_named(self):
        assert output_columns(JOIN_SQL) == ["user_id", "ts", "country"]

    def test_output_columns_star(self):
        assert output_columns("SELECT * FROM db.t") == []

    def test_unparseable_query(self):
        with pytest.raises(ConfigurationError):
            source_tables("SELEC oops FROM", "default")

    def test_non_select_rejected(self):
        with pytest.raises(ConfigurationError, match="SELECT"):
            output_columns("INSERT INTO db.t VALUES (1)")


# ---------------------------------------------------------------------------
# splice_window_predicate
# ---------------------------------------------------------------------------


class TestSpliceWindowPredicate:
    def test_adds_where_to_view_query(self):
        sql = "SELECT toStartOfHour(event_time) AS hour, count() AS events FROM analytics.events GROUP BY hour"
        spliced = splice_window_predicate(sql, "event_time", START, END)
        assert f"WHERE event_time >= {LOWER} AND event_time < {UPPER}" in spliced
        assert spliced.index("WHERE") < spliced.index("GROUP BY")
        assert "WITH" not in spliced.upper().split("WHERE")[0]

    def test_never_wraps_in_cte_or_subquery(self):
        sql = "SELECT user_id, count() AS n FROM analytics.events GROUP BY user_id"
        spliced = splice_window_predicate(sql, "event_time", START, END)
        assert not spliced.upper().startswith("WITH")
        assert spliced.upper().count("SELECT") == 1

    def test_existing_where_is_anded(self):
        sql = "SELECT user_id FROM analytics.events WHERE kind = 'click' OR kind = 'view'"
        spliced = splice_window_predicate(sql, "event_time", START, END)
        assert f"(kind = 'click' OR kind = 'view') AND event_time >= {LOWER}" in spliced

    def test_alias_qualifies_column(self):
        sql = "SELECT e.user_id FROM analytics.events AS e"
        spliced = splice_window_predicate(sql, "event_time", START, END)
        assert f"e.event_time >= {LOWER}" in spliced
        assert f"e.event_time < {UPPER}" in spliced

    def test_every_union_branch_filtered(self):
        sql = (
            "SELECT user_id, event_time FROM analytics.events "
            "UNION ALL SELECT user_id, event_time FROM analytics.events_archive"
        )
        spliced = splice_window_predicate(sql, "event_time", START, END)
        assert spliced.count(f"event_time >= {LOWER}") == 2
        assert spliced.count(f"event_time < {UPPER}") == 2
        assert "UNION ALL" in spliced

    def test_join_uses_qualifier(self):
        spliced = splice_window_predicate(JOIN_SQL, "event_time", START, END, join_qualifier="e")
        assert f"WHERE e.event_time >= {LOWER} AND e.event_time < {UPPER}" in spliced

    def test_subquery_source_not_descended(self):
        sql = "SELECT n FROM (SELECT count() AS n, event_time FROM analytics.events GROUP BY event_time)"
        spliced = splice_window_predicate(sql, "event_time", START, END)
        assert spliced.count(f"event_time >= {LOWER}") == 1
        assert spliced.rstrip().endswith(f"event_time < {UPPER}")

    def test_sub_second_precision(self):
        start = datetime(2025, 1, 1, 0, 0, 0, 250_000, tzinfo=UTC)
        spliced = splice_window_predicate("SELECT x FROM db.t", "ts", start, END)
        assert "toDateTime64('2025-01-01 00:00:00.250', 3, 'UTC')" in spliced


# ---------------------------------------------------------------------------
# resolve_join_qualifier
# ---------------------------------------------------------------------------


class TestResolveJoinQualifier:
    def test_single_table_view_has_no_qualifier(self):
        view = _view("SELECT user_id FROM analytics.events")
        assert resolve_join_qualifier(view, "event_time", SchemaCatalog()) is None

    def test_column_on_one_joined_table(self):
        catalog = SchemaCatalog(tables=[_table("events", "event_time", "user_id"), _table("users", "id", "country")])
        assert resolve_join_qualifier(_view(JOIN_SQL), "event_time", catalog) == "e"

    def test_column_on_both_tables_is_ambiguous(self):
        catalog = SchemaCatalog(
            tables=[_table("events", "event_time", "user_id"), _table("users", "id", "event_time")]
        )
        with pytest.raises(AmbiguousTimeColumnError, match="exactly one table"):
            resolve_join_qualifier(_view(JOIN_SQL), "event_time", catalog)

    def test_column_on_no_table_is_ambiguous(self):
        catalog = SchemaCatalog(tables=[_table("events", "user_id"), _table("users", "id")])
        with pytest.raises(AmbiguousTimeColumnError):
            resolve_join_qualifier(_view(JOIN_SQL), "event_time", catalog)

    def test_unaliased_join_uses_table_name(self):
        sql = "SELECT events.user_id FROM analytics.events JOIN analytics.users ON events.user_id = users.id"
        catalog = SchemaCatalog(tables=[_table("events", "event_time", "user_id"), _table("users", "id")])
        assert resolve_join_qualifier(_view(sql), "event_time", catalog) == "events"


# ---------------------------------------------------------------------------
# render_chunk_statement
# ---------------------------------------------------------------------------


class TestRenderChunkStatement:
    def test_table_statement(self, table_plan):
        statement = render_chunk_statement(table_plan, 0)
        token = table_plan.idempotency_token(0)
        header, insert, select = statement.sql.split("\n")
        assert header == f"/* backfill plan={table_plan.plan_id} chunk=0 token={token} */"
        assert insert == "INSERT INTO analytics.events"
        assert select == (
            f"SELECT * FROM analytics.events WHERE event_time >= {LOWER} AND event_time < {UPPER}"
        )

    def test_settings_carry_token(self, table_plan):
        statement = render_chunk_statement(table_plan, 1)
        assert statement.settings == {
            "async_insert": 0,
            "insert_deduplication_token": table_plan.idempotency_token(1),
        }

    def test_settings_without_token(self, table_plan):
        statement = render_chunk_statement(table_plan, 1, require_idempotency_token=False)
        assert statement.settings == {"async_insert": 0}
        # The header still identifies the chunk.
        assert f"token={table_plan.idempotency_token(1)}" in statement.sql

    def test_clamped_last_chunk(self, table_plan):
        statement = render_chunk_statement(table_plan, 2)
        assert "toDateTime64('2025-01-01 12:00:00.000', 3, 'UTC')" in statement.sql
        assert "toDateTime64('2025-01-01 13:00:00.000', 3, 'UTC')" in statement.sql

    def test_mv_replay_statement(self, mv_plan):
        statement = render_chunk_statement(mv_plan, 0)
        lines = statement.sql.split("\n", 2)
        assert lines[1] == "INSERT INTO analytics.events_hourly (hour, events)"
        body = lines[2]
        assert "FROM analytics.events WHERE" in body
        assert f"event_time >= {LOWER} AND event_time < {UPPER}" in body
        assert body.index("WHERE") < body.index("GROUP BY")
        assert "WITH" not in body.upper().split("FROM")[0]

    def test_rendering_is_pure(self, mv_plan):
        assert render_chunk_statement(mv_plan, 2) == render_chunk_statement(mv_plan, 2)
