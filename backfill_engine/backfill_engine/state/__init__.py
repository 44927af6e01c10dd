"""Durable plan, run, and event storage."""

from backfill_engine.state.checkpoint_store import FileCheckpointStore, validate_run_against_plan

__all__ = ["FileCheckpointStore", "validate_run_against_plan"]
