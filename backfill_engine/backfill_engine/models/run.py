"""Run checkpoint and event models.

A :class:`BackfillRun` is the mutable checkpoint of one plan execution.  It is
rewritten after every chunk attempt so that a crash loses at most the
in-flight chunk's outcome.  :class:`Event` records form an append-only audit
trail that is never consulted for control flow.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Lifecycle of a backfill run."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    COMPLETED_WITH_FAILURES = "completed_with_failures"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES


_TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.COMPLETED_WITH_FAILURES, RunStatus.CANCELLED}
)


class ChunkStatus(str, Enum):
    """Lifecycle of one chunk inside a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED_RETRYING = "failed_retrying"
    FAILED_EXHAUSTED = "failed_exhausted"


class ChunkState(BaseModel):
    """Checkpointed progress of a single chunk."""

    index: int = Field(..., ge=0)
    start: datetime
    end: datetime
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = Field(default=0, ge=0, description="Executions started for this chunk.")
    last_error: str | None = None
    idempotency_token: str = Field(..., min_length=1)
    rows_written: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class BackfillRun(BaseModel):
    """Checkpoint for a plan's execution."""

    plan_id: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    target: str = Field(..., description="``database.table`` the run writes to.")
    status: RunStatus = RunStatus.NOT_STARTED
    chunk_states: list[ChunkState] = Field(default_factory=list)
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    last_error: str | None = None
    compatibility_token: str = ""
    replay_done: bool = False
    replay_failed: bool = False

    def chunks_with_status(self, status: ChunkStatus) -> list[ChunkState]:
        return [c for c in self.chunk_states if c.status == status]


class EventKind(str, Enum):
    PLAN_WRITTEN = "plan_written"
    RUN_STARTED = "run_started"
    CHUNK_STARTED = "chunk_started"
    CHUNK_SUCCEEDED = "chunk_succeeded"
    CHUNK_RETRY_SCHEDULED = "chunk_retry_scheduled"
    CHUNK_FAILED = "chunk_failed"
    RUN_COMPLETED = "run_completed"
    RUN_COMPLETED_WITH_FAILURES = "run_completed_with_failures"
    RUN_CANCELLED = "run_cancelled"
    RUN_PAUSED = "run_paused"


class Event(BaseModel):
    """One line of the append-only event log."""

    ts: datetime
    run_id: str
    kind: EventKind
    chunk_index: int | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
