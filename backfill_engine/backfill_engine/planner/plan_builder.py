"""Deterministic backfill plan builder.

Given a target, a window, a chunk size, and the schema catalog, produce a
:class:`BackfillPlan` whose chunks partition the window exactly.  The same
inputs always produce the same ``plan_id`` and chunk boundaries.

Key design decisions
--------------------
* **No I/O.**  The catalog is loaded by the caller; plans are persisted by the
  checkpoint store.
* **Strategy detection** is driven by the catalog: a target written by a
  materialized view is replayed through that view's query, anything else is
  reprocessed from itself.
* **The last chunk is clamped** to the window end, so chunk sizes that do not
  divide the window evenly still yield a gap-free partition.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from backfill_engine.config import LimitsConfig
from backfill_engine.errors import (
    AmbiguousTimeColumnError,
    ChunkTooSmallError,
    IdempotencyTokenRequiredError,
    InvalidWindowError,
    WindowTooLargeError,
)
from backfill_engine.models.plan import (
    BackfillPlan,
    Chunk,
    Strategy,
    TargetDescriptor,
    TimeWindow,
    compute_plan_id,
    format_hours,
)
from backfill_engine.models.schema import MaterializedViewMetadata, SchemaCatalog, TableMetadata
from backfill_engine.planner.templates import (
    build_mv_replay_template,
    build_table_template,
    primary_source_table,
)
from backfill_engine.planner.time_column import resolve_time_column

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_window(
    window: TimeWindow,
    chunk_hours: float,
    limits: LimitsConfig,
    *,
    allow_large_window: bool = False,
) -> None:
    """Reject windows and chunk sizes outside the configured limits.

    Raises
    ------
    InvalidWindowError
        The window is empty or inverted, or ``chunk_hours`` is not positive.
    WindowTooLargeError
        The window exceeds ``limits.max_window_hours`` and
        *allow_large_window* is not set.
    ChunkTooSmallError
        ``chunk_hours`` is below ``limits.min_chunk_minutes``.
    """
    if window.end <= window.start:
        raise InvalidWindowError("Invalid backfill window. Expected --to to be after --from.")
    if chunk_hours <= 0:
        raise InvalidWindowError(f"Chunk size must be positive, got {format_hours(chunk_hours)}h.")

    duration = window.duration_hours
    if duration > limits.max_window_hours and not allow_large_window:
        raise WindowTooLargeError(
            f"Requested window ({duration:.2f} hours) exceeds limits.max_window_hours="
            f"{format_hours(limits.max_window_hours)}. Retry with --force-large-window to acknowledge risk."
        )
    if chunk_hours * 60 < limits.min_chunk_minutes:
        raise ChunkTooSmallError(
            f"Chunk size {format_hours(chunk_hours)}h is below limits.min_chunk_minutes="
            f"{format_hours(limits.min_chunk_minutes)}."
        )


# ---------------------------------------------------------------------------
# Partitioning
# ---------------------------------------------------------------------------


def partition_window(window: TimeWindow, chunk_hours: float) -> list[Chunk]:
    """Split *window* into consecutive ``chunk_hours`` slices, clamping the last."""
    step = timedelta(hours=chunk_hours)
    if step <= timedelta(0):
        raise InvalidWindowError(f"Chunk size must be positive, got {format_hours(chunk_hours)}h.")

    chunks: list[Chunk] = []
    current = window.start
    while current < window.end:
        upper = min(current + step, window.end)
        chunks.append(Chunk(index=len(chunks), start=current, end=upper))
        current = upper
    return chunks


# ---------------------------------------------------------------------------
# Time column
# ---------------------------------------------------------------------------


def _split_qualified(name: str) -> tuple[str, str]:
    database, _, table = name.partition(".")
    return database, table


def filtered_table(
    target: TargetDescriptor,
    catalog: SchemaCatalog,
    view: MaterializedViewMetadata | None,
) -> TableMetadata | None:
    """The table whose rows the window predicate filters.

    For a view-fed target that is the view's FROM table; the destination table
    is the fallback when the source is unknown to the catalog.
    """
    if view is not None:
        source = primary_source_table(view.select_sql, view.database)
        if source is not None:
            table = catalog.find_table(*_split_qualified(source))
            if table is not None:
                return table
    return catalog.find_table(target.database, target.table)


def resolve_plan_time_column(
    target: TargetDescriptor,
    catalog: SchemaCatalog,
    explicit: str | None,
    default_time_column: str | None = None,
) -> str:
    """Resolve the time column for *target*, looking at the right table."""
    view = catalog.find_view_for_destination(target)
    scanned = filtered_table(target, catalog, view)
    destination = catalog.find_table(target.database, target.table)

    schema_config = destination.time_column if destination is not None else None
    if schema_config is None and scanned is not None:
        schema_config = scanned.time_column

    return resolve_time_column(explicit, schema_config, default_time_column, scanned)


def _ensure_known_column(table: TableMetadata | None, time_column: str) -> None:
    if table is None or not table.columns:
        return
    if table.column(time_column) is None:
        raise AmbiguousTimeColumnError(
            f"Time column {time_column!r} is not a column of {table.qualified}. "
            "Pass --time-column with an existing column."
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_plan(
    target: TargetDescriptor,
    window: TimeWindow,
    chunk_hours: float,
    time_column: str | None,
    catalog: SchemaCatalog,
    *,
    limits: LimitsConfig | None = None,
    allow_large_window: bool = False,
    require_idempotency_token: bool = True,
    default_time_column: str | None = None,
) -> BackfillPlan:
    """Build a deterministic backfill plan.

    Parameters
    ----------
    target:
        Destination table to backfill.
    window:
        Half-open UTC window ``[start, end)``.
    chunk_hours:
        Chunk size in hours; the final chunk may be shorter.
    time_column:
        Explicit time column, or ``None`` to resolve it from the schema
        configuration, *default_time_column*, and auto-detection.
    catalog:
        Pre-loaded schema metadata.
    limits:
        Window and chunk bounds; defaults to :class:`LimitsConfig` defaults.
    allow_large_window:
        Accept windows above ``limits.max_window_hours``.
    require_idempotency_token:
        Whether chunk statements will carry deduplication tokens.  Replaying
        a materialized view without them is refused.

    Returns
    -------
    BackfillPlan
        The plan, with at least one chunk.
    """
    limits = limits or LimitsConfig()
    validate_window(window, chunk_hours, limits, allow_large_window=allow_large_window)

    view = catalog.find_view_for_destination(target)
    strategy = Strategy.MV_REPLAY if view is not None else Strategy.TABLE

    if strategy is Strategy.MV_REPLAY and not require_idempotency_token:
        raise IdempotencyTokenRequiredError(
            f"Replaying materialized view {view.qualified} requires idempotency tokens. "
            "Set defaults.require_idempotency_token = true."
        )

    resolved = resolve_plan_time_column(target, catalog, time_column, default_time_column)

    if view is not None:
        template = build_mv_replay_template(target, view, resolved, catalog)
        if template.time_column_qualifier is None:
            _ensure_known_column(filtered_table(target, catalog, view), resolved)
    else:
        _ensure_known_column(catalog.find_table(target.database, target.table), resolved)
        template = build_table_template(target, resolved)

    chunks = partition_window(window, chunk_hours)
    plan_id = compute_plan_id(target, window, chunk_hours, resolved)

    logger.info(
        "Planned backfill %s for %s: %d chunk(s) of %sh, strategy=%s, time_column=%s",
        plan_id,
        target,
        len(chunks),
        format_hours(chunk_hours),
        strategy.value,
        resolved,
        extra={"plan_id": plan_id},
    )

    return BackfillPlan(
        plan_id=plan_id,
        target=target,
        window=window,
        chunk_hours=chunk_hours,
        time_column=resolved,
        strategy=strategy,
        template=template,
        chunks=chunks,
    )
