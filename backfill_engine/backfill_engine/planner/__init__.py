"""Plan building: time-column resolution, chunking, and replay SQL."""

from backfill_engine.planner.plan_builder import build_plan, partition_window, validate_window
from backfill_engine.planner.plan_serializer import deserialize_plan, serialize_plan, validate_plan_schema
from backfill_engine.planner.templates import ChunkStatement, render_chunk_statement
from backfill_engine.planner.time_column import detect_time_column_candidates, resolve_time_column

__all__ = [
    "ChunkStatement",
    "build_plan",
    "deserialize_plan",
    "detect_time_column_candidates",
    "partition_window",
    "render_chunk_statement",
    "resolve_time_column",
    "serialize_plan",
    "validate_plan_schema",
    "validate_window",
]
