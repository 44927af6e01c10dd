"""Status summaries and doctor reports derived from plan and run checkpoints.

Both are plain data: the CLI renders them with Rich or dumps them as JSON.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from backfill_engine.models.plan import BackfillPlan
from backfill_engine.models.run import BackfillRun, ChunkStatus, RunStatus

PLANNED = "planned"


class StatusSummary(BaseModel):
    """Progress of one plan's run."""

    plan_id: str
    target: str
    status: str = Field(..., description="Run status, or 'planned' when no run exists yet.")
    strategy: str
    time_column: str
    window_start: datetime
    window_end: datetime
    chunk_hours: float
    run_id: str | None = None
    total_chunks: int = 0
    totals: dict[str, int] = Field(
        default_factory=dict,
        description="Chunk count per chunk status, every status present.",
    )
    attempts: int = Field(default=0, description="Attempts across all chunks.")
    rows_written: int = Field(default=0, description="Rows reported by the store across succeeded chunks.")
    failed_chunks: list[int] = Field(default_factory=list)
    last_error: str | None = None
    updated_at: datetime | None = None
    paths: dict[str, str] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.status == RunStatus.COMPLETED.value


class DoctorReport(BaseModel):
    """Detected issues with remediation commands."""

    plan_id: str
    status: str
    issue_codes: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    failed_chunks: list[int] = Field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issue_codes


def summarize_status(plan: BackfillPlan, run: BackfillRun | None, paths: dict[str, str]) -> StatusSummary:
    totals = {status.value: 0 for status in ChunkStatus}
    summary = StatusSummary(
        plan_id=plan.plan_id,
        target=plan.target.qualified,
        status=PLANNED,
        strategy=plan.strategy.value,
        time_column=plan.time_column,
        window_start=plan.window.start,
        window_end=plan.window.end,
        chunk_hours=plan.chunk_hours,
        total_chunks=len(plan.chunks),
        totals=totals,
        paths=paths,
    )
    if run is None:
        totals[ChunkStatus.PENDING.value] = len(plan.chunks)
        return summary

    for state in run.chunk_states:
        totals[state.status.value] += 1
    summary.status = run.status.value
    summary.run_id = run.run_id
    summary.attempts = sum(s.attempts for s in run.chunk_states)
    summary.rows_written = sum(s.rows_written or 0 for s in run.chunk_states if s.status is ChunkStatus.SUCCEEDED)
    summary.failed_chunks = [s.index for s in run.chunk_states if s.status is ChunkStatus.FAILED_EXHAUSTED]
    summary.last_error = run.last_error
    summary.updated_at = run.updated_at
    return summary


def diagnose(summary: StatusSummary) -> DoctorReport:
    """Map a status summary to issue codes and the commands that fix them."""
    plan_id = summary.plan_id
    report = DoctorReport(plan_id=plan_id, status=summary.status, failed_chunks=list(summary.failed_chunks))

    if summary.status in (PLANNED, RunStatus.NOT_STARTED.value):
        report.issue_codes.append("run_missing")
        report.recommendations.append(f"Start the backfill: tidefill run --plan-id {plan_id}")
    elif summary.status == RunStatus.CANCELLED.value:
        report.issue_codes.append("required_pending")
        report.recommendations.append(
            f"Run was cancelled; plan a new backfill for the remaining window: tidefill plan --target {summary.target}"
        )
    elif summary.status == RunStatus.PAUSED.value:
        report.issue_codes.append("required_pending")
        report.recommendations.append(f"Resume execution: tidefill resume --plan-id {plan_id}")
    elif summary.status == RunStatus.RUNNING.value:
        report.issue_codes.append("required_pending")
        report.recommendations.append(f"Monitor progress: tidefill status --plan-id {plan_id}")
        report.recommendations.append(
            f"If no process is running it any more: tidefill resume --plan-id {plan_id}"
        )

    if summary.failed_chunks or summary.status == RunStatus.COMPLETED_WITH_FAILURES.value:
        report.issue_codes.append("chunk_failed_retry_exhausted")
        report.recommendations.append(f"Inspect status: tidefill status --plan-id {plan_id}")
        if summary.status != RunStatus.CANCELLED.value:
            report.recommendations.append(f"Retry failed chunks: tidefill resume --plan-id {plan_id}")

    if not report.issue_codes:
        report.recommendations.append("No remediation required.")
    return report
