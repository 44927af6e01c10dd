"""Backfill operations as called by the command line.

:class:`BackfillService` wires settings, the policy guard, the plan builder,
the checkpoint store, and the execution engine together.  Each public method
corresponds to one CLI command and returns plain models; presentation is the
caller's job.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel

from backfill_engine.checks.backfill_check import CheckReport, evaluate_backfill_check
from backfill_engine.config import BackfillSettings, ClickHouseConfig
from backfill_engine.errors import (
    InvalidTargetError,
    InvalidWindowError,
    PlanAlreadyExistsError,
    PlanNotFoundError,
    RunAlreadyCompletedError,
    RunCancelledError,
    RunCompatibilityError,
    RunNotFoundError,
)
from backfill_engine.executor.base import StoreClient
from backfill_engine.executor.clickhouse_client import ClickHouseStoreClient
from backfill_engine.executor.engine import EngineOptions, ExecutionEngine, create_run
from backfill_engine.executor.schema_introspector import introspect_catalog
from backfill_engine.loader.schema_loader import load_schema_file
from backfill_engine.models.plan import BackfillPlan, TargetDescriptor, TimeWindow, format_hours, format_instant
from backfill_engine.models.run import BackfillRun, Event, EventKind, RunStatus
from backfill_engine.models.schema import SchemaCatalog
from backfill_engine.planner.plan_builder import build_plan
from backfill_engine.policy.guard import PolicyGuard, implicit_window
from backfill_engine.reporting import DoctorReport, StatusSummary, diagnose, summarize_status
from backfill_engine.state.checkpoint_store import FileCheckpointStore

logger = logging.getLogger(__name__)

CatalogProvider = Callable[[], SchemaCatalog]
ClientFactory = Callable[[], StoreClient]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class PlanResult(BaseModel):
    """Outcome of ``plan``."""

    plan: BackfillPlan
    existed: bool
    plan_path: str


class RunResult(BaseModel):
    """Outcome of ``run`` or ``resume``."""

    run: BackfillRun
    summary: StatusSummary
    noop: bool = False


# ---------------------------------------------------------------------------
# Compatibility
# ---------------------------------------------------------------------------


def compute_compatibility_token(plan: BackfillPlan, options: EngineOptions, clickhouse: ClickHouseConfig) -> str:
    """Fingerprint of everything a resumed run must agree with.

    Covers the plan identity, the execution options that change what a chunk
    writes, and the store the run writes to.  Backoff timings are excluded.
    """
    identity = {
        "plan_id": plan.plan_id,
        "target": plan.target.qualified,
        "from": format_instant(plan.window.start),
        "to": format_instant(plan.window.end),
        "chunk_hours": format_hours(plan.chunk_hours),
        "time_column": plan.time_column,
        "strategy": plan.strategy.value,
        "max_retries_per_chunk": options.max_retries_per_chunk,
        "require_idempotency_token": options.require_idempotency_token,
        "store": f"{clickhouse.host}:{clickhouse.port or ''}/{clickhouse.database}",
    }
    blob = json.dumps(identity, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:32]


def _cancelled(plan_id: str) -> RunCancelledError:
    return RunCancelledError(
        f"Run is cancelled for plan {plan_id}. Create a new plan for the remaining window, "
        f"or inspect it with `tidefill doctor --plan-id {plan_id}`."
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BackfillService:
    """Entry point for every backfill command.

    Parameters
    ----------
    settings:
        Validated settings.
    store:
        Checkpoint store; defaults to one rooted at ``settings.state_dir``.
    catalog_provider:
        Returns the schema catalog used for planning.  Called lazily, only by
        commands that plan.
    client_factory:
        Returns a connected store client.  Called lazily, only by commands
        that execute chunks.
    sleep, interrupt, clock:
        Passed through to :class:`ExecutionEngine`.
    """

    def __init__(
        self,
        settings: BackfillSettings,
        store: FileCheckpointStore | None = None,
        catalog_provider: CatalogProvider | None = None,
        client_factory: ClientFactory | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        interrupt: threading.Event | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store or FileCheckpointStore(settings.state_dir)
        self._catalog_provider = catalog_provider or self._default_catalog
        self._client_factory = client_factory
        self._guard = PolicyGuard(settings.policy, settings.limits)
        self._sleep = sleep
        self._interrupt = interrupt
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def store(self) -> FileCheckpointStore:
        return self._store

    @property
    def guard(self) -> PolicyGuard:
        return self._guard

    def _client(self) -> StoreClient:
        if self._client_factory is not None:
            return self._client_factory()
        return ClickHouseStoreClient.from_config(self._settings.clickhouse)

    def _default_catalog(self) -> SchemaCatalog:
        """Schema file when configured, live introspection otherwise."""
        if self._settings.schema_file is not None:
            return load_schema_file(self._settings.schema_file)
        client = self._client()
        try:
            return introspect_catalog(client)
        finally:
            client.close()

    # -- plan ---------------------------------------------------------------

    def _resolve_window(self, start: str | None, end: str | None) -> TimeWindow:
        has_window = bool(start) and bool(end)
        if bool(start) != bool(end):
            raise InvalidWindowError("Pass both --from and --to, or neither.")
        self._guard.check_explicit_window(has_window)
        if has_window:
            return TimeWindow.parse(start or "", end or "")
        window = implicit_window(self._settings.defaults.implicit_window_hours, self._clock())
        logger.info(
            "No window given; using the last %sh: %s to %s",
            format_hours(self._settings.defaults.implicit_window_hours),
            format_instant(window.start),
            format_instant(window.end),
        )
        return window

    def plan(
        self,
        target: str,
        start: str | None = None,
        end: str | None = None,
        *,
        chunk_hours: float | None = None,
        time_column: str | None = None,
        force_large_window: bool = False,
        force: bool = False,
    ) -> PlanResult:
        """Build and persist a plan.

        Planning the same inputs again is a no-op (``existed=True``).  A
        different plan stored under the same id is only replaced with
        *force*, which also discards that plan's run and events.
        """
        descriptor = TargetDescriptor.parse(target)
        window = self._resolve_window(start, end)
        hours = chunk_hours if chunk_hours is not None else self._settings.defaults.chunk_hours
        self._guard.check_limits(window, hours, force_large_window)

        plan = build_plan(
            descriptor,
            window,
            hours,
            time_column,
            self._catalog_provider(),
            limits=self._settings.limits,
            allow_large_window=force_large_window,
            require_idempotency_token=self._settings.defaults.require_idempotency_token,
            default_time_column=self._settings.defaults.time_column,
        )

        try:
            existed = self._store.save_plan(plan)
        except PlanAlreadyExistsError:
            if not force:
                raise
            logger.warning("Regenerating plan %s (--force)", plan.plan_id, extra={"plan_id": plan.plan_id})
            self._store.delete_plan(plan.plan_id)
            existed = self._store.save_plan(plan)

        if not existed:
            self._store.append_event(
                plan.plan_id,
                Event(
                    ts=self._clock(),
                    run_id="",
                    kind=EventKind.PLAN_WRITTEN,
                    detail={"target": plan.target.qualified, "chunks": len(plan.chunks)},
                ),
            )
        return PlanResult(plan=plan, existed=existed, plan_path=str(self._store.plan_path(plan.plan_id)))

    def _require_plan(self, plan_id: str) -> BackfillPlan:
        plan = self._store.load_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found in {self._store.root}. Run `tidefill plan` first.")
        return plan

    # -- run / resume ---------------------------------------------------------

    def _engine(self, options: EngineOptions) -> tuple[ExecutionEngine, StoreClient]:
        client = self._client()
        engine = ExecutionEngine(
            self._store,
            client,
            options,
            sleep=self._sleep,
            interrupt=self._interrupt,
            clock=self._clock,
        )
        return engine, client

    def _ensure_compatible(self, run: BackfillRun, token: str, force: bool) -> None:
        if not run.compatibility_token:
            run.compatibility_token = token
            return
        if run.compatibility_token == token:
            return
        if not force:
            raise RunCompatibilityError(
                f"Run compatibility check failed for plan {run.plan_id}. Runtime options changed since the "
                "last checkpoint. Retry with --force-compatibility to acknowledge the override."
            )
        logger.warning(
            "Run %s options changed since last checkpoint; continuing (--force-compatibility)",
            run.plan_id,
            extra={"plan_id": run.plan_id},
        )
        run.compatibility_token = token

    def _execute(self, plan: BackfillPlan, run: BackfillRun, options: EngineOptions, *, resume: bool) -> RunResult:
        engine, client = self._engine(options)
        try:
            final = engine.run(plan, run, resume=resume)
        finally:
            client.close()
        return RunResult(run=final, summary=self._summary(plan, final))

    def run(
        self,
        plan_id: str | None = None,
        *,
        target: str | None = None,
        start: str | None = None,
        end: str | None = None,
        chunk_hours: float | None = None,
        time_column: str | None = None,
        force_large_window: bool = False,
        replay_done: bool = False,
        replay_failed: bool = False,
        force_overlap: bool = False,
        force_compatibility: bool = False,
        simulate_fail_chunk: int | None = None,
        simulate_fail_count: int | None = None,
    ) -> RunResult:
        """Execute a stored plan, or plan inline when dry runs are not required."""
        if plan_id is not None:
            plan = self._require_plan(plan_id)
        else:
            self._guard.check_dry_run(False)
            if not target:
                raise InvalidTargetError("Pass --plan-id, or --target with the window to plan inline.")
            plan = self.plan(
                target,
                start,
                end,
                chunk_hours=chunk_hours,
                time_column=time_column,
                force_large_window=force_large_window,
            ).plan

        options = EngineOptions.from_settings(
            self._settings,
            replay_done=replay_done,
            replay_failed=replay_failed,
            simulate_fail_chunk=simulate_fail_chunk,
            simulate_fail_count=simulate_fail_count,
        )
        token = compute_compatibility_token(plan, options, self._settings.clickhouse)
        run = self._store.load_run(plan.plan_id, plan)
        self._guard.check_overlap(plan.target, plan.plan_id, self._store.list_runs(), force_overlap)

        if run is None:
            run = create_run(plan, token, self._clock())
        else:
            self._ensure_compatible(run, token, force_compatibility)
            if run.status is RunStatus.COMPLETED and not (replay_done or replay_failed):
                logger.info("Run %s already completed; nothing to do", plan.plan_id, extra={"plan_id": plan.plan_id})
                return RunResult(run=run, summary=self._summary(plan, run), noop=True)
            if run.status is RunStatus.CANCELLED:
                raise _cancelled(plan.plan_id)

        return self._execute(plan, run, options, resume=False)

    def resume(
        self,
        plan_id: str,
        *,
        replay_done: bool = False,
        force_overlap: bool = False,
        force_compatibility: bool = False,
    ) -> RunResult:
        """Continue a paused or partially failed run, retrying exhausted chunks.

        Cancelled runs are terminal and are refused like in :meth:`run`.
        """
        plan = self._require_plan(plan_id)
        run = self._store.load_run(plan_id, plan)
        if run is None:
            raise RunNotFoundError(f"Run state not found for plan {plan_id}. Start with `tidefill run` before resume.")

        options = EngineOptions.from_settings(self._settings, replay_done=replay_done, replay_failed=True)
        token = compute_compatibility_token(plan, options, self._settings.clickhouse)
        self._ensure_compatible(run, token, force_compatibility)
        self._guard.check_overlap(plan.target, plan.plan_id, self._store.list_runs(), force_overlap)
        if run.status is RunStatus.CANCELLED:
            raise _cancelled(plan_id)

        if run.status is RunStatus.COMPLETED and not replay_done:
            logger.info("Run %s already completed; nothing to resume", plan_id, extra={"plan_id": plan_id})
            return RunResult(run=run, summary=self._summary(plan, run), noop=True)

        return self._execute(plan, run, options, resume=True)

    # -- inspection -----------------------------------------------------------

    def _summary(self, plan: BackfillPlan, run: BackfillRun | None) -> StatusSummary:
        return summarize_status(plan, run, self._store.paths(plan.plan_id))

    def status(self, plan_id: str) -> StatusSummary:
        plan = self._require_plan(plan_id)
        return self._summary(plan, self._store.load_run(plan_id, plan))

    def doctor(self, plan_id: str) -> DoctorReport:
        return diagnose(self.status(plan_id))

    def check(self) -> CheckReport:
        return evaluate_backfill_check(self._store, self._settings.policy)

    # -- cancel ---------------------------------------------------------------

    def cancel(self, plan_id: str) -> StatusSummary:
        """Mark the run cancelled; a running engine stops at its next chunk boundary."""
        plan = self._require_plan(plan_id)
        run = self._store.load_run(plan_id, plan)
        if run is None:
            raise RunNotFoundError(f"Run state not found for plan {plan_id}. Nothing to cancel.")
        if run.status is RunStatus.COMPLETED:
            raise RunAlreadyCompletedError(f"Run already completed for plan {plan_id}; cannot cancel.")
        if run.status is RunStatus.CANCELLED:
            return self._summary(plan, run)

        now = self._clock()
        run.status = RunStatus.CANCELLED
        run.last_error = "Cancelled by operator"
        run.updated_at = now
        run.completed_at = now
        self._store.save_run(run)
        self._store.append_event(
            plan_id,
            Event(ts=now, run_id=run.run_id, kind=EventKind.RUN_CANCELLED, detail={"by": "operator"}),
        )
        logger.info("Cancelled backfill %s", plan_id, extra={"plan_id": plan_id})
        return self._summary(plan, run)
