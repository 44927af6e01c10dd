"""Pydantic models for plans, runs, events, and schema metadata."""

from backfill_engine.models.plan import (
    BackfillPlan,
    Chunk,
    MvReplayTemplate,
    ReplayTemplate,
    Strategy,
    TableTemplate,
    TargetDescriptor,
    TimeWindow,
    compute_idempotency_token,
    compute_plan_id,
)
from backfill_engine.models.run import BackfillRun, ChunkState, ChunkStatus, Event, EventKind, RunStatus
from backfill_engine.models.schema import ColumnInfo, MaterializedViewMetadata, SchemaCatalog, TableMetadata

__all__ = [
    "BackfillPlan",
    "BackfillRun",
    "Chunk",
    "ChunkState",
    "ChunkStatus",
    "ColumnInfo",
    "Event",
    "EventKind",
    "MaterializedViewMetadata",
    "MvReplayTemplate",
    "ReplayTemplate",
    "RunStatus",
    "SchemaCatalog",
    "Strategy",
    "TableMetadata",
    "TableTemplate",
    "TargetDescriptor",
    "TimeWindow",
    "compute_idempotency_token",
    "compute_plan_id",
]
