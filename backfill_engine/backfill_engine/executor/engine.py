"""Sequential, checkpointed execution of backfill plans.

The engine walks a plan's chunks in ascending index order and runs each one
through the store client, retrying failures with exponential backoff.  The
run checkpoint is written synchronously before and after every attempt, so a
crash loses at most the outcome of the chunk that was in flight.

Control flow is driven by the run checkpoint only; the event log is written
alongside it for auditing and never read back here.

Stopping early
--------------
* **Cancellation** is requested out of band by rewriting the persisted run
  status to ``cancelled``.  The engine re-reads the persisted status at every
  chunk boundary and before every checkpoint write, so an operator's cancel
  is never overwritten.
* **Interruption** (an ``interrupt`` event set by a signal handler) stops the
  run at the next chunk boundary with status ``paused``.
* ``KeyboardInterrupt`` raised while a chunk is executing resets running
  chunks to ``pending``, persists a ``paused`` run, and re-raises.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from backfill_engine.config import BackfillSettings
from backfill_engine.errors import ChunkExecutionError
from backfill_engine.executor.base import StoreClient
from backfill_engine.executor.retry import RetryConfig, compute_delay
from backfill_engine.models.plan import BackfillPlan
from backfill_engine.models.run import BackfillRun, ChunkState, ChunkStatus, Event, EventKind, RunStatus
from backfill_engine.planner.templates import render_chunk_statement
from backfill_engine.state.checkpoint_store import FileCheckpointStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def create_run(plan: BackfillPlan, compatibility_token: str = "", now: datetime | None = None) -> BackfillRun:
    """A fresh run checkpoint with every chunk pending."""
    now = now or _utcnow()
    return BackfillRun(
        plan_id=plan.plan_id,
        run_id=uuid.uuid4().hex,
        target=plan.target.qualified,
        status=RunStatus.NOT_STARTED,
        chunk_states=[
            ChunkState(
                index=chunk.index,
                start=chunk.start,
                end=chunk.end,
                idempotency_token=plan.idempotency_token(chunk.index),
            )
            for chunk in plan.chunks
        ],
        started_at=now,
        updated_at=now,
        compatibility_token=compatibility_token,
    )


class EngineOptions(BaseModel):
    """Execution knobs for one engine invocation."""

    max_retries_per_chunk: int = Field(default=3, ge=1, description="Attempts per chunk, the first included.")
    retry_delay_ms: int = Field(default=1000, ge=0)
    max_retry_delay_ms: int = Field(default=60_000, ge=0)
    require_idempotency_token: bool = True
    max_parallel_chunks: int = Field(
        default=1,
        ge=1,
        description="Accepted for configuration compatibility; dispatch is sequential.",
    )
    replay_done: bool = Field(default=False, description="Re-execute chunks that already succeeded.")
    replay_failed: bool = Field(default=False, description="Re-execute chunks whose retries were exhausted.")
    simulate_fail_chunk: int | None = Field(
        default=None,
        ge=0,
        description="Chunk index whose first attempts fail without touching the store.",
    )
    simulate_fail_count: int = Field(default=1, ge=0, description="How many attempts of that chunk fail.")

    @classmethod
    def from_settings(cls, settings: BackfillSettings, **overrides: Any) -> EngineOptions:
        defaults = settings.defaults
        values: dict[str, Any] = {
            "max_retries_per_chunk": defaults.max_retries_per_chunk,
            "retry_delay_ms": defaults.retry_delay_ms,
            "max_retry_delay_ms": defaults.max_retry_delay_ms,
            "require_idempotency_token": defaults.require_idempotency_token,
            "max_parallel_chunks": defaults.max_parallel_chunks,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def retry(self) -> RetryConfig:
        return RetryConfig.from_milliseconds(
            self.max_retries_per_chunk,
            self.retry_delay_ms,
            self.max_retry_delay_ms,
        )


class ExecutionEngine:
    """Runs a plan's chunks against a store, checkpointing every attempt.

    Parameters
    ----------
    store:
        Checkpoint store for run state and events.
    client:
        Store client the chunk statements are sent to.
    options:
        Retry, replay, and simulation options.
    sleep:
        Called with the backoff delay in seconds; replaceable in tests.
    interrupt:
        When set, the run pauses at the next chunk boundary.
    clock:
        Source of "now" for checkpoint timestamps.
    """

    def __init__(
        self,
        store: FileCheckpointStore,
        client: StoreClient,
        options: EngineOptions | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        interrupt: threading.Event | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._client = client
        self._options = options or EngineOptions()
        self._sleep = sleep
        self._interrupt = interrupt
        self._clock = clock
        self._simulated_failures: dict[int, int] = {}

    @property
    def options(self) -> EngineOptions:
        return self._options

    def new_run(self, plan: BackfillPlan, compatibility_token: str = "") -> BackfillRun:
        return create_run(plan, compatibility_token, self._clock())

    # -- public API ---------------------------------------------------------

    def run(self, plan: BackfillPlan, run: BackfillRun | None = None, *, resume: bool = False) -> BackfillRun:
        """Execute *plan*, continuing *run* when given.

        Resuming always replays chunks whose retries were exhausted.  A
        cancelled *run* is terminal and is returned untouched.

        Returns
        -------
        BackfillRun
            The final checkpoint; its status is ``completed``,
            ``completed_with_failures``, ``cancelled`` or ``paused``.

        Raises
        ------
        CheckpointError
            A checkpoint or event could not be persisted.  The run stops.
        """
        if run is None:
            run = self.new_run(plan)
        elif run.status is RunStatus.CANCELLED:
            logger.info("Run %s is cancelled; not executing", plan.plan_id, extra={"plan_id": plan.plan_id})
            return run

        run.replay_done = self._options.replay_done
        run.replay_failed = self._options.replay_failed or resume
        self._reset_replayed_chunks(run)

        run.status = RunStatus.RUNNING
        run.completed_at = None
        self._save(run, watch_cancel=False)
        self._emit(
            run,
            EventKind.RUN_STARTED,
            resume=resume,
            replay_done=run.replay_done,
            replay_failed=run.replay_failed,
        )
        logger.info(
            "Starting backfill %s for %s (%d chunks, resume=%s)",
            plan.plan_id,
            plan.target,
            len(plan.chunks),
            resume,
            extra={"plan_id": plan.plan_id, "run_id": run.run_id},
        )

        try:
            for state in run.chunk_states:
                if self._should_stop(run):
                    break
                if state.status in (ChunkStatus.SUCCEEDED, ChunkStatus.FAILED_EXHAUSTED):
                    continue
                self._execute_chunk(plan, run, state)
                if run.status is not RunStatus.RUNNING:
                    break
        except KeyboardInterrupt:
            self._pause_after_interrupt(run)
            raise

        return self._finish(run)

    # -- chunk execution ----------------------------------------------------

    def _reset_replayed_chunks(self, run: BackfillRun) -> None:
        for state in run.chunk_states:
            replay = (state.status is ChunkStatus.SUCCEEDED and run.replay_done) or (
                state.status is ChunkStatus.FAILED_EXHAUSTED and run.replay_failed
            )
            if replay:
                state.status = ChunkStatus.PENDING
                state.attempts = 0
                state.last_error = None
                state.rows_written = None
                state.started_at = None
                state.completed_at = None

    def _execute_chunk(self, plan: BackfillPlan, run: BackfillRun, state: ChunkState) -> None:
        retry = self._options.retry
        context = {"plan_id": plan.plan_id, "run_id": run.run_id, "chunk_index": state.index}

        while True:
            before = state.model_copy()
            state.attempts += 1
            state.status = ChunkStatus.RUNNING
            state.started_at = self._clock()
            state.completed_at = None
            self._save(run)
            if run.status is RunStatus.CANCELLED:
                # Cancelled between the boundary check and this save; the
                # attempt never started.
                for name in ChunkState.model_fields:
                    setattr(state, name, getattr(before, name))
                return
            self._emit(run, EventKind.CHUNK_STARTED, state.index, attempt=state.attempts)

            try:
                rows = self._dispatch(plan, state)
            except ChunkExecutionError as exc:
                message = str(exc)
                state.last_error = message
                run.last_error = f"chunk {state.index}: {message}"

                if state.attempts < retry.max_attempts:
                    delay = compute_delay(state.attempts, retry)
                    state.status = ChunkStatus.FAILED_RETRYING
                    self._save(run)
                    self._emit(
                        run,
                        EventKind.CHUNK_RETRY_SCHEDULED,
                        state.index,
                        attempt=state.attempts,
                        delay_ms=int(delay * 1000),
                        error=message,
                    )
                    logger.warning(
                        "Chunk %d attempt %d/%d failed, retrying in %.1fs: %s",
                        state.index,
                        state.attempts,
                        retry.max_attempts,
                        delay,
                        message,
                        extra={**context, "attempt": state.attempts},
                    )
                    if run.status is RunStatus.CANCELLED:
                        return
                    self._sleep(delay)
                    if self._interrupt is not None and self._interrupt.is_set():
                        run.status = RunStatus.PAUSED
                        return
                    continue

                state.status = ChunkStatus.FAILED_EXHAUSTED
                state.completed_at = self._clock()
                self._save(run)
                self._emit(run, EventKind.CHUNK_FAILED, state.index, attempt=state.attempts, error=message)
                logger.error(
                    "Chunk %d failed after %d attempt(s): %s",
                    state.index,
                    state.attempts,
                    message,
                    extra={**context, "attempt": state.attempts},
                )
                return

            state.status = ChunkStatus.SUCCEEDED
            state.rows_written = rows
            state.last_error = None
            state.completed_at = self._clock()
            self._save(run)
            self._emit(
                run,
                EventKind.CHUNK_SUCCEEDED,
                state.index,
                attempt=state.attempts,
                rows_written=rows,
            )
            logger.info(
                "Chunk %d succeeded on attempt %d",
                state.index,
                state.attempts,
                extra={**context, "attempt": state.attempts},
            )
            return

    def _dispatch(self, plan: BackfillPlan, state: ChunkState) -> int | None:
        """Send one chunk statement, wrapping any store failure."""
        opts = self._options
        if opts.simulate_fail_chunk == state.index:
            failed = self._simulated_failures.get(state.index, 0)
            if failed < opts.simulate_fail_count:
                self._simulated_failures[state.index] = failed + 1
                raise ChunkExecutionError(
                    state.index,
                    f"Simulated failure for chunk {state.index} ({failed + 1}/{opts.simulate_fail_count}).",
                )

        statement = render_chunk_statement(
            plan,
            state.index,
            require_idempotency_token=opts.require_idempotency_token,
        )
        logger.debug("Chunk %d SQL:\n%s", state.index, statement.sql)
        try:
            return self._client.execute(statement.sql, settings=statement.settings)
        except Exception as exc:
            raise ChunkExecutionError(state.index, f"{type(exc).__name__}: {exc}") from exc

    # -- stopping -----------------------------------------------------------

    def _persisted_status(self, run: BackfillRun) -> RunStatus | None:
        persisted = self._store.load_run(run.plan_id)
        return persisted.status if persisted is not None else None

    def _should_stop(self, run: BackfillRun) -> bool:
        if self._persisted_status(run) is RunStatus.CANCELLED:
            run.status = RunStatus.CANCELLED
            return True
        if self._interrupt is not None and self._interrupt.is_set():
            run.status = RunStatus.PAUSED
            return True
        return False

    def _pause_after_interrupt(self, run: BackfillRun) -> None:
        if self._persisted_status(run) is RunStatus.CANCELLED:
            run.status = RunStatus.CANCELLED
        if run.status is RunStatus.CANCELLED:
            # Chunk states stay as the cancel left them.
            self._save(run)
            self._emit(run, EventKind.RUN_CANCELLED, reason="keyboard_interrupt")
            logger.warning(
                "Backfill %s interrupted after cancellation", run.plan_id, extra={"plan_id": run.plan_id}
            )
            return
        for state in run.chunk_states:
            if state.status is ChunkStatus.RUNNING:
                state.status = ChunkStatus.PENDING
        run.status = RunStatus.PAUSED
        self._save(run)
        self._emit(run, EventKind.RUN_PAUSED, reason="keyboard_interrupt")
        logger.warning("Backfill %s interrupted; run paused", run.plan_id, extra={"plan_id": run.plan_id})

    def _finish(self, run: BackfillRun) -> BackfillRun:
        if run.status is RunStatus.RUNNING:
            if run.chunks_with_status(ChunkStatus.FAILED_EXHAUSTED):
                run.status = RunStatus.COMPLETED_WITH_FAILURES
                run.completed_at = self._clock()
            elif all(s.status is ChunkStatus.SUCCEEDED for s in run.chunk_states):
                run.status = RunStatus.COMPLETED
                run.completed_at = self._clock()
            else:
                run.status = RunStatus.PAUSED
        self._save(run)

        kind = {
            RunStatus.COMPLETED: EventKind.RUN_COMPLETED,
            RunStatus.COMPLETED_WITH_FAILURES: EventKind.RUN_COMPLETED_WITH_FAILURES,
            RunStatus.CANCELLED: EventKind.RUN_CANCELLED,
            RunStatus.PAUSED: EventKind.RUN_PAUSED,
        }[run.status]
        totals = {status.value: len(run.chunks_with_status(status)) for status in ChunkStatus}
        self._emit(run, kind, **totals)
        logger.info(
            "Backfill %s finished with status %s",
            run.plan_id,
            run.status.value,
            extra={"plan_id": run.plan_id, "run_id": run.run_id},
        )
        return run

    # -- persistence --------------------------------------------------------

    def _save(self, run: BackfillRun, *, watch_cancel: bool = True) -> None:
        """Write the checkpoint, adopting a cancel persisted in the meantime."""
        if watch_cancel and run.status is not RunStatus.CANCELLED:
            if self._persisted_status(run) is RunStatus.CANCELLED:
                logger.info("Cancellation of %s detected", run.plan_id, extra={"plan_id": run.plan_id})
                run.status = RunStatus.CANCELLED
                run.completed_at = None
        run.updated_at = self._clock()
        self._store.save_run(run)

    def _emit(self, run: BackfillRun, kind: EventKind, chunk_index: int | None = None, **detail: Any) -> None:
        event = Event(ts=self._clock(), run_id=run.run_id, kind=kind, chunk_index=chunk_index, detail=detail)
        self._store.append_event(run.plan_id, event)
