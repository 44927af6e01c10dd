"""Replay SQL for backfill chunks.

Two template kinds exist:

* ``table`` re-inserts the target's own rows that fall inside the chunk
  window (the target reprocesses itself).
* ``mv_replay`` re-runs a materialized view's stored SELECT with the chunk
  window ANDed into that SELECT's own WHERE clause.  For a top-level UNION the
  predicate is added to every branch.  The query is never wrapped in an outer
  CTE or subquery, so aggregations inside the view only see in-window rows.

All rewriting goes through sqlglot's AST (ClickHouse dialect) rather than
string concatenation.  Rendering is a pure function of the plan and the chunk
index, so the same chunk always produces the same statement.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import sqlglot
from sqlglot import exp
from sqlglot.errors import ErrorLevel, ParseError

from backfill_engine.errors import AmbiguousTimeColumnError, ConfigurationError
from backfill_engine.models.plan import (
    BackfillPlan,
    MvReplayTemplate,
    TableTemplate,
    TargetDescriptor,
    to_utc,
)
from backfill_engine.models.schema import MaterializedViewMetadata, SchemaCatalog

logger = logging.getLogger(__name__)

DIALECT = "clickhouse"

_PLAIN_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class ChunkStatement:
    """A rendered chunk statement plus the query-level settings sent with it."""

    sql: str
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceTable:
    """A table read by a SELECT branch, with the name it is referenced by."""

    database: str | None
    name: str
    alias: str | None

    @property
    def reference(self) -> str:
        return self.alias or self.name

    def qualified(self, default_database: str) -> str:
        return f"{self.database or default_database}.{self.name}"


# ---------------------------------------------------------------------------
# AST helpers
# ---------------------------------------------------------------------------


def _parse_select(select_sql: str) -> exp.Expression:
    try:
        tree = sqlglot.parse_one(select_sql, read=DIALECT, error_level=ErrorLevel.RAISE)
    except ParseError as exc:
        raise ConfigurationError(f"Cannot parse materialized view query: {exc}") from exc
    if not isinstance(tree, (exp.Select, exp.Union)):
        raise ConfigurationError(
            f"Materialized view query must be a SELECT or UNION, got {type(tree).__name__}."
        )
    return tree


def _select_branches(tree: exp.Expression) -> list[exp.Select]:
    """Flatten a (possibly nested) top-level UNION into its SELECT branches."""
    if isinstance(tree, exp.Union):
        return _select_branches(tree.left) + _select_branches(tree.right)
    if isinstance(tree, exp.Subquery) and isinstance(tree.this, (exp.Select, exp.Union)):
        return _select_branches(tree.this)
    if isinstance(tree, exp.Select):
        return [tree]
    raise ConfigurationError(f"Unsupported UNION branch: {tree.sql(dialect=DIALECT)}")


def _from_clause(select: exp.Select) -> exp.From | None:
    for value in select.args.values():
        if isinstance(value, exp.From):
            return value
    return None


def _branch_sources(select: exp.Select) -> list[SourceTable]:
    """Tables named directly in a branch's FROM and JOIN clauses."""
    nodes: list[exp.Expression] = []
    from_ = _from_clause(select)
    if from_ is not None:
        nodes.append(from_.this)
    for join in select.args.get("joins") or []:
        nodes.append(join.this)

    sources: list[SourceTable] = []
    for node in nodes:
        if isinstance(node, exp.Table) and node.name:
            sources.append(
                SourceTable(
                    database=node.db or None,
                    name=node.name,
                    alias=node.alias or None,
                )
            )
    return sources


def _has_joins(select: exp.Select) -> bool:
    return bool(select.args.get("joins"))


def _quote(name: str) -> str:
    if _PLAIN_IDENTIFIER.match(name):
        return name
    return "`" + name.replace("`", "\\`") + "`"


def _clickhouse_instant(value: datetime) -> str:
    utc = to_utc(value)
    return utc.strftime("%Y-%m-%d %H:%M:%S.") + f"{utc.microsecond // 1000:03d}"


def _instant_literal(value: datetime) -> exp.Expression:
    return exp.Anonymous(
        this="toDateTime64",
        expressions=[
            exp.Literal.string(_clickhouse_instant(value)),
            exp.Literal.number(3),
            exp.Literal.string("UTC"),
        ],
    )


def window_predicate(
    time_column: str,
    start: datetime,
    end: datetime,
    qualifier: str | None = None,
) -> exp.Expression:
    """Build ``col >= toDateTime64(start) AND col < toDateTime64(end)``."""
    return exp.and_(
        exp.GTE(this=exp.column(time_column, table=qualifier), expression=_instant_literal(start)),
        exp.LT(this=exp.column(time_column, table=qualifier), expression=_instant_literal(end)),
    )


# ---------------------------------------------------------------------------
# Query inspection (used at plan time)
# ---------------------------------------------------------------------------


def source_tables(select_sql: str, default_database: str) -> list[str]:
    """Return the sorted, de-duplicated ``db.table`` names a query reads from.

    Only tables named in FROM/JOIN clauses of the top-level SELECT branches
    are reported; subqueries are not descended into.
    """
    tree = _parse_select(select_sql)
    names = {
        source.qualified(default_database)
        for branch in _select_branches(tree)
        for source in _branch_sources(branch)
    }
    return sorted(names)


def primary_source_table(select_sql: str, default_database: str) -> str | None:
    """The ``db.table`` in the FROM clause of the first SELECT branch."""
    branches = _select_branches(_parse_select(select_sql))
    sources = _branch_sources(branches[0])
    return sources[0].qualified(default_database) if sources else None


def output_columns(select_sql: str) -> list[str]:
    """Named output columns of the first branch, empty if any is unnamed or ``*``."""
    branch = _select_branches(_parse_select(select_sql))[0]
    if any(e.is_star for e in branch.expressions):
        return []
    names = branch.named_selects
    if len(names) != len(branch.expressions) or not all(names):
        return []
    return list(names)


def resolve_join_qualifier(
    view: MaterializedViewMetadata,
    time_column: str,
    catalog: SchemaCatalog,
) -> str | None:
    """Attribute *time_column* to exactly one joined table of the view.

    Returns ``None`` when no branch joins.  For joined branches the column
    must belong to exactly one of the joined tables (per the catalog), and all
    joined branches must agree on the reference; anything else raises
    :class:`AmbiguousTimeColumnError`.
    """
    branches = _select_branches(_parse_select(view.select_sql))
    qualifiers: set[str] = set()

    for branch in branches:
        if not _has_joins(branch):
            continue
        owners: list[SourceTable] = []
        for source in _branch_sources(branch):
            table = catalog.find_table(source.database or view.database, source.name)
            if table is not None and table.column(time_column) is not None:
                owners.append(source)
        if len(owners) != 1:
            raise AmbiguousTimeColumnError(
                f"Time column {time_column!r} cannot be attributed to exactly one table "
                f"joined by {view.qualified}. Pass --time-column with a column of a single source table."
            )
        qualifiers.add(owners[0].reference)

    if len(qualifiers) > 1:
        raise AmbiguousTimeColumnError(
            f"Joined branches of {view.qualified} reference {time_column!r} through different tables."
        )
    return qualifiers.pop() if qualifiers else None


# ---------------------------------------------------------------------------
# Template construction
# ---------------------------------------------------------------------------


def build_table_template(target: TargetDescriptor, time_column: str) -> TableTemplate:
    return TableTemplate(target=target, time_column=time_column)


def build_mv_replay_template(
    target: TargetDescriptor,
    view: MaterializedViewMetadata,
    time_column: str,
    catalog: SchemaCatalog,
) -> MvReplayTemplate:
    """Normalise the view query and capture what rendering needs."""
    tree = _parse_select(view.select_sql)
    return MvReplayTemplate(
        target=target,
        view=view.qualified,
        select_sql=tree.sql(dialect=DIALECT),
        time_column=time_column,
        time_column_qualifier=resolve_join_qualifier(view, time_column, catalog),
        insert_columns=output_columns(view.select_sql),
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def splice_window_predicate(
    select_sql: str,
    time_column: str,
    start: datetime,
    end: datetime,
    join_qualifier: str | None = None,
) -> str:
    """AND the window predicate into every top-level SELECT branch.

    Branches that read a single table qualify the column with that table's
    alias when it has one.  Branches with joins use *join_qualifier*.
    """
    tree = _parse_select(select_sql)
    for branch in _select_branches(tree):
        if _has_joins(branch):
            qualifier = join_qualifier
        else:
            sources = _branch_sources(branch)
            qualifier = sources[0].alias if sources else None
        branch.where(window_predicate(time_column, start, end, qualifier), append=True, copy=False)
    return tree.sql(dialect=DIALECT)


def _header(plan: BackfillPlan, index: int, token: str) -> str:
    return f"/* backfill plan={plan.plan_id} chunk={index} token={token} */"


def _render_body(plan: BackfillPlan, start: datetime, end: datetime) -> str:
    template = plan.template
    if isinstance(template, TableTemplate):
        select = (
            exp.select("*")
            .from_(template.target.qualified, dialect=DIALECT)
            .where(window_predicate(template.time_column, start, end))
        )
        return f"INSERT INTO {template.target.qualified}\n{select.sql(dialect=DIALECT)}"

    spliced = splice_window_predicate(
        template.select_sql,
        template.time_column,
        start,
        end,
        template.time_column_qualifier,
    )
    columns = ""
    if template.insert_columns:
        columns = " (" + ", ".join(_quote(c) for c in template.insert_columns) + ")"
    return f"INSERT INTO {template.target.qualified}{columns}\n{spliced}"


def render_chunk_statement(
    plan: BackfillPlan,
    index: int,
    *,
    require_idempotency_token: bool = True,
) -> ChunkStatement:
    """Render the statement for chunk *index* of *plan*."""
    chunk = plan.chunks[index]
    token = plan.idempotency_token(index)
    sql = _header(plan, index, token) + "\n" + _render_body(plan, chunk.start, chunk.end)

    settings: dict[str, Any] = {"async_insert": 0}
    if require_idempotency_token:
        settings["insert_deduplication_token"] = token
    return ChunkStatement(sql=sql, settings=settings)
