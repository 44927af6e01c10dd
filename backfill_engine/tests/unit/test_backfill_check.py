"""Unit tests for backfill_engine.checks and backfill_engine.reporting."""

from __future__ import annotations

from datetime import UTC, datetime

from backfill_engine.checks.backfill_check import FindingSeverity, evaluate_backfill_check
from backfill_engine.config import PolicyConfig
from backfill_engine.executor.engine import create_run
from backfill_engine.models.run import ChunkStatus, RunStatus
from backfill_engine.reporting import PLANNED, diagnose, summarize_status

NOW = datetime(2025, 1, 2, tzinfo=UTC)


def _save_run(store, plan, status: RunStatus, chunk_statuses=None):
    run = create_run(plan, now=NOW)
    run.status = status
    for state, chunk_status in zip(run.chunk_states, chunk_statuses or []):
        state.status = chunk_status
    store.save_run(run)
    return run


def _codes(report) -> list[str]:
    return [f.code for f in report.findings]


# ---------------------------------------------------------------------------
# evaluate_backfill_check
# ---------------------------------------------------------------------------


class TestBackfillCheck:
    def test_empty_store_passes(self, store):
        report = evaluate_backfill_check(store, PolicyConfig())
        assert report.ok is True
        assert report.findings == []

    def test_completed_runs_pass(self, store, table_plan):
        store.save_plan(table_plan)
        _save_run(store, table_plan, RunStatus.COMPLETED)
        report = evaluate_backfill_check(store, PolicyConfig())
        assert report.ok is True
        assert report.required_count == 0

    def test_plan_without_run_is_pending(self, store, table_plan):
        store.save_plan(table_plan)
        report = evaluate_backfill_check(store, PolicyConfig())
        assert report.ok is False
        assert _codes(report) == ["required_pending"]
        assert report.findings[0].severity is FindingSeverity.ERROR
        assert report.findings[0].metadata["plan_ids"] == [table_plan.plan_id]

    def test_active_runs_counted(self, store, table_plan, mv_plan):
        store.save_plan(table_plan)
        store.save_plan(mv_plan)
        _save_run(store, table_plan, RunStatus.RUNNING)
        _save_run(store, mv_plan, RunStatus.PAUSED)
        report = evaluate_backfill_check(store, PolicyConfig())
        assert report.active_runs == 2
        assert report.required_count == 2

    def test_exhausted_chunks_always_fail(self, store, table_plan):
        store.save_plan(table_plan)
        _save_run(store, table_plan, RunStatus.COMPLETED_WITH_FAILURES, [ChunkStatus.FAILED_EXHAUSTED])
        report = evaluate_backfill_check(store, PolicyConfig(fail_check_on_required_pending=False))
        assert report.ok is False
        assert "chunk_failed_retry_exhausted" in _codes(report)
        assert report.failed_runs == 1

    def test_relaxed_policy_warns(self, store, table_plan):
        store.save_plan(table_plan)
        report = evaluate_backfill_check(store, PolicyConfig(fail_check_on_required_pending=False))
        assert report.ok is True
        severities = {f.code: f.severity for f in report.findings}
        assert severities == {"required_pending": FindingSeverity.WARN, "policy_relaxed": FindingSeverity.INFO}

    def test_cancelled_run_is_pending(self, store, table_plan):
        store.save_plan(table_plan)
        _save_run(store, table_plan, RunStatus.CANCELLED)
        report = evaluate_backfill_check(store, PolicyConfig())
        assert _codes(report) == ["required_pending"]

    def test_exhausted_chunk_in_cancelled_run(self, store, table_plan):
        store.save_plan(table_plan)
        _save_run(store, table_plan, RunStatus.CANCELLED, [ChunkStatus.FAILED_EXHAUSTED])
        report = evaluate_backfill_check(store, PolicyConfig())
        assert _codes(report) == ["required_pending", "chunk_failed_retry_exhausted"]
        assert report.failed_runs == 1

    def test_exhausted_chunk_in_paused_run(self, store, table_plan):
        store.save_plan(table_plan)
        _save_run(
            store,
            table_plan,
            RunStatus.PAUSED,
            [ChunkStatus.SUCCEEDED, ChunkStatus.FAILED_EXHAUSTED, ChunkStatus.PENDING],
        )
        report = evaluate_backfill_check(store, PolicyConfig(fail_check_on_required_pending=False))
        assert report.ok is False
        assert "chunk_failed_retry_exhausted" in _codes(report)
        assert report.failed_runs == 1


# ---------------------------------------------------------------------------
# summarize_status
# ---------------------------------------------------------------------------


class TestSummarizeStatus:
    def test_planned(self, table_plan):
        summary = summarize_status(table_plan, None, {"plan": "p.json"})
        assert summary.status == PLANNED
        assert summary.totals["pending"] == 3
        assert summary.run_id is None
        assert summary.paths == {"plan": "p.json"}

    def test_counts(self, table_plan):
        run = create_run(table_plan, now=NOW)
        run.status = RunStatus.COMPLETED_WITH_FAILURES
        run.chunk_states[0].status = ChunkStatus.SUCCEEDED
        run.chunk_states[0].attempts = 1
        run.chunk_states[0].rows_written = 40
        run.chunk_states[1].status = ChunkStatus.FAILED_EXHAUSTED
        run.chunk_states[1].attempts = 3
        run.chunk_states[2].status = ChunkStatus.SUCCEEDED
        run.chunk_states[2].attempts = 2
        run.chunk_states[2].rows_written = 2
        run.last_error = "chunk 1: boom"

        summary = summarize_status(table_plan, run, {})

        assert summary.status == "completed_with_failures"
        assert summary.totals == {
            "pending": 0,
            "running": 0,
            "succeeded": 2,
            "failed_retrying": 0,
            "failed_exhausted": 1,
        }
        assert summary.attempts == 6
        assert summary.rows_written == 42
        assert summary.failed_chunks == [1]
        assert summary.last_error == "chunk 1: boom"
        assert not summary.is_complete


# ---------------------------------------------------------------------------
# diagnose
# ---------------------------------------------------------------------------


class TestDiagnose:
    def _report(self, plan, status: RunStatus | None, exhausted: tuple[int, ...] = ()):
        run = None
        if status is not None:
            run = create_run(plan, now=NOW)
            run.status = status
            for index in exhausted:
                run.chunk_states[index].status = ChunkStatus.FAILED_EXHAUSTED
        return diagnose(summarize_status(plan, run, {}))

    def test_planned(self, table_plan):
        report = self._report(table_plan, None)
        assert report.issue_codes == ["run_missing"]
        assert f"tidefill run --plan-id {table_plan.plan_id}" in report.recommendations[0]

    def test_failures(self, table_plan):
        report = self._report(table_plan, RunStatus.COMPLETED_WITH_FAILURES)
        assert report.issue_codes == ["chunk_failed_retry_exhausted"]
        assert any("tidefill resume" in r for r in report.recommendations)

    def test_paused(self, table_plan):
        report = self._report(table_plan, RunStatus.PAUSED)
        assert report.issue_codes == ["required_pending"]

    def test_cancelled(self, table_plan):
        report = self._report(table_plan, RunStatus.CANCELLED)
        assert report.issue_codes == ["required_pending"]
        assert f"tidefill plan --target {table_plan.target.qualified}" in report.recommendations[0]
        assert not any("tidefill resume" in r for r in report.recommendations)

    def test_cancelled_with_exhausted_chunks(self, table_plan):
        report = self._report(table_plan, RunStatus.CANCELLED, exhausted=(0,))
        assert report.issue_codes == ["required_pending", "chunk_failed_retry_exhausted"]
        assert report.failed_chunks == [0]
        assert not any("tidefill resume" in r for r in report.recommendations)

    def test_paused_with_exhausted_chunks(self, table_plan):
        report = self._report(table_plan, RunStatus.PAUSED, exhausted=(1,))
        assert report.issue_codes == ["required_pending", "chunk_failed_retry_exhausted"]
        assert any("tidefill resume" in r for r in report.recommendations)

    def test_completed_is_healthy(self, table_plan):
        report = self._report(table_plan, RunStatus.COMPLETED)
        assert report.healthy
        assert report.recommendations == ["No remediation required."]
