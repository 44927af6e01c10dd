"""Backfill plan models.

Plans are **deterministic**: the same target, window, chunk size, and time
column always produce the same ``plan_id`` and byte-identical chunk
boundaries.  Plan IDs and idempotency tokens are content hashes, never random
UUIDs, and no wall-clock timestamp is stored inside a plan.
"""

from __future__ import annotations

import hashlib
import re
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from backfill_engine.errors import InvalidTargetError, InvalidWindowError

_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")

PLAN_ID_LENGTH = 16
TOKEN_LENGTH = 32


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_instant(raw: str, label: str = "timestamp") -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    value = raw.strip()
    if not value:
        raise InvalidWindowError(f"Missing value for {label}.")
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidWindowError(f"Invalid {label}: {raw!r}") from exc
    return to_utc(parsed)


def format_instant(value: datetime) -> str:
    """Render an instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

    This is the canonical text form used inside plan and token hashes.
    """
    utc = to_utc(value)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def format_hours(hours: float) -> str:
    """Render a chunk size without a trailing ``.0`` for whole hours."""
    as_float = float(hours)
    if as_float.is_integer():
        return str(int(as_float))
    return repr(as_float)


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_plan_id(
    target: TargetDescriptor,
    window: TimeWindow,
    chunk_hours: float,
    time_column: str,
) -> str:
    """Derive the 16-hex-char plan id from the plan identity tuple."""
    identity = "|".join(
        [
            target.qualified,
            format_instant(window.start),
            format_instant(window.end),
            format_hours(chunk_hours),
            time_column,
        ]
    )
    return _sha256_hex(identity)[:PLAN_ID_LENGTH]


def compute_idempotency_token(plan_id: str, index: int, start: datetime, end: datetime) -> str:
    """Derive the per-chunk deduplication token.

    Pure in ``(plan_id, index, start, end)``: identical across retries,
    ``run`` and ``resume`` invocations, and process restarts.
    """
    seed = f"{plan_id}|{index}|{format_instant(start)}|{format_instant(end)}"
    return _sha256_hex(seed)[:TOKEN_LENGTH]


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class TargetDescriptor(BaseModel):
    """Destination table of a backfill, ``database.table``."""

    model_config = ConfigDict(frozen=True)

    database: str = Field(..., min_length=1)
    table: str = Field(..., min_length=1)

    @field_validator("database", "table")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        if not _IDENTIFIER.match(value):
            raise ValueError(f"Invalid identifier {value!r}.")
        return value

    @classmethod
    def parse(cls, raw: str) -> TargetDescriptor:
        """Parse ``database.table``, raising :class:`InvalidTargetError`."""
        value = raw.strip()
        parts = value.split(".")
        if len(parts) != 2 or not all(_IDENTIFIER.match(p) for p in parts):
            raise InvalidTargetError(f"Invalid target {raw!r}. Expected <database.table>.")
        return cls(database=parts[0], table=parts[1])

    @property
    def qualified(self) -> str:
        return f"{self.database}.{self.table}"

    def __str__(self) -> str:
        return self.qualified


class TimeWindow(BaseModel):
    """A half-open ``[start, end)`` window of UTC instants."""

    model_config = ConfigDict(frozen=True)

    start: datetime = Field(..., description="Inclusive lower bound.")
    end: datetime = Field(..., description="Exclusive upper bound.")

    @field_validator("start", "end")
    @classmethod
    def _normalise_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    @classmethod
    def parse(cls, start: str, end: str) -> TimeWindow:
        """Parse two ISO timestamps, rejecting empty or inverted windows."""
        window = cls(start=parse_instant(start, "--from"), end=parse_instant(end, "--to"))
        if window.end <= window.start:
            raise InvalidWindowError("Invalid backfill window. Expected --to to be after --from.")
        return window

    @property
    def duration_hours(self) -> float:
        return (self.end - self.start).total_seconds() / 3600.0


class Chunk(BaseModel):
    """One contiguous ``[start, end)`` slice of a plan's window."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    start: datetime
    end: datetime


class Strategy(str, Enum):
    """How a chunk re-derives rows for the target."""

    TABLE = "table"
    MV_REPLAY = "mv_replay"


# ---------------------------------------------------------------------------
# Replay templates (tagged variant, rendered by backfill_engine.planner.templates)
# ---------------------------------------------------------------------------


class TableTemplate(BaseModel):
    """Re-insert the target's own rows inside the chunk window."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["table"] = "table"
    target: TargetDescriptor
    time_column: str


class MvReplayTemplate(BaseModel):
    """Re-run a materialized view's query with the window spliced into it.

    ``select_sql`` is the view's stored query as normalised at plan time.
    ``time_column_qualifier`` is the table reference (alias or name) the
    window predicate is qualified with in branches that join several tables;
    single-table branches use their own FROM alias.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["mv_replay"] = "mv_replay"
    target: TargetDescriptor
    view: str = Field(..., description="Fully-qualified materialized view name.")
    select_sql: str = Field(..., min_length=1)
    time_column: str
    time_column_qualifier: str | None = None
    insert_columns: list[str] = Field(default_factory=list)


ReplayTemplate = Annotated[TableTemplate | MvReplayTemplate, Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class BackfillPlan(BaseModel):
    """Immutable description of a backfill job.

    Created once by the plan builder and read-only thereafter.
    """

    model_config = ConfigDict(frozen=True)

    plan_id: str = Field(..., min_length=PLAN_ID_LENGTH, max_length=PLAN_ID_LENGTH)
    target: TargetDescriptor
    window: TimeWindow
    chunk_hours: float = Field(..., gt=0)
    time_column: str = Field(..., min_length=1)
    strategy: Strategy
    template: ReplayTemplate
    chunks: list[Chunk] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_partition(self) -> BackfillPlan:
        """The chunks must cover the window exactly, in order, without gaps."""
        if not self.chunks:
            raise ValueError("A plan must contain at least one chunk.")
        if self.chunks[0].start != self.window.start or self.chunks[-1].end != self.window.end:
            raise ValueError("Chunks do not cover the plan window.")
        for position, chunk in enumerate(self.chunks):
            if chunk.index != position:
                raise ValueError(f"Chunk at position {position} has index {chunk.index}.")
            if chunk.end <= chunk.start:
                raise ValueError(f"Chunk {position} is empty.")
            if position and self.chunks[position - 1].end != chunk.start:
                raise ValueError(f"Chunk {position} is not contiguous with its predecessor.")
        return self

    def idempotency_token(self, index: int) -> str:
        chunk = self.chunks[index]
        return compute_idempotency_token(self.plan_id, chunk.index, chunk.start, chunk.end)
