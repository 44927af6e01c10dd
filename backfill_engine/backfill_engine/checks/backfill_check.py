"""CI gate over stored backfill plans.

Every stored plan whose run has not ``completed`` counts as a required
backfill still pending.  The check produces findings with a severity; the
report is ``ok`` only when no finding is an error.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from backfill_engine.config import PolicyConfig
from backfill_engine.models.run import ChunkStatus, RunStatus
from backfill_engine.state.checkpoint_store import FileCheckpointStore


class FindingSeverity(str, Enum):
    """How a finding affects the CI outcome."""

    ERROR = "error"
    WARN = "warn"
    INFO = "info"


class CheckFinding(BaseModel):
    """One observation produced by the backfill check."""

    code: str = Field(..., description="Stable machine-readable identifier.")
    message: str = Field(..., description="Human-readable description.")
    severity: FindingSeverity
    metadata: dict[str, int | list[str]] = Field(default_factory=dict)


class CheckReport(BaseModel):
    """Aggregated result of the backfill check."""

    ok: bool = True
    findings: list[CheckFinding] = Field(default_factory=list)
    required_count: int = Field(default=0, description="Plans whose run has not completed.")
    active_runs: int = Field(default=0, description="Runs currently running or paused.")
    failed_runs: int = Field(default=0, description="Runs that completed with exhausted chunks.")

    @staticmethod
    def from_findings(findings: list[CheckFinding], **counts: int) -> CheckReport:
        ok = all(f.severity is not FindingSeverity.ERROR for f in findings)
        return CheckReport(ok=ok, findings=findings, **counts)


def evaluate_backfill_check(store: FileCheckpointStore, policy: PolicyConfig) -> CheckReport:
    """Inspect every stored plan and its run checkpoint."""
    pending: list[str] = []
    failed: list[str] = []
    active = 0

    for plan_id in store.list_plan_ids():
        run = store.load_run(plan_id)
        if run is None:
            pending.append(plan_id)
            continue
        if run.status in (RunStatus.RUNNING, RunStatus.PAUSED):
            active += 1
        if run.chunks_with_status(ChunkStatus.FAILED_EXHAUSTED):
            failed.append(plan_id)
        if run.status is not RunStatus.COMPLETED:
            pending.append(plan_id)

    findings: list[CheckFinding] = []
    if pending:
        findings.append(
            CheckFinding(
                code="required_pending",
                message=f"Required backfills pending completion: {len(pending)}",
                severity=FindingSeverity.ERROR if policy.fail_check_on_required_pending else FindingSeverity.WARN,
                metadata={"required_count": len(pending), "plan_ids": pending},
            )
        )
    if failed:
        findings.append(
            CheckFinding(
                code="chunk_failed_retry_exhausted",
                message=f"Backfill runs with chunks that exhausted their retries: {len(failed)}",
                severity=FindingSeverity.ERROR,
                metadata={"failed_runs": len(failed), "plan_ids": failed},
            )
        )
    if not policy.fail_check_on_required_pending:
        findings.append(
            CheckFinding(
                code="policy_relaxed",
                message="Backfill check policy is relaxed: policy.fail_check_on_required_pending = false.",
                severity=FindingSeverity.INFO,
            )
        )

    return CheckReport.from_findings(
        findings,
        required_count=len(pending),
        active_runs=active,
        failed_runs=len(failed),
    )
