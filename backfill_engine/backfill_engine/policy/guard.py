"""Safety preconditions evaluated before planning or running a backfill.

Every check is a no-op when its policy toggle is off.  Violations raise a
:class:`~backfill_engine.errors.PolicyViolationError` subclass so callers
can tell "unsafe right now" apart from "malformed input".

The overlap check is advisory: it inspects persisted run checkpoints and
takes no lock, so two processes starting at the same instant can both pass.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from backfill_engine.config import LimitsConfig, PolicyConfig
from backfill_engine.errors import DryRunRequiredError, ExplicitWindowRequiredError, OverlappingRunError
from backfill_engine.models.plan import TargetDescriptor, TimeWindow
from backfill_engine.models.run import BackfillRun
from backfill_engine.planner.plan_builder import validate_window

logger = logging.getLogger(__name__)


def implicit_window(hours: float, now: datetime | None = None) -> TimeWindow:
    """The last *hours* hours, ending at the most recent whole UTC hour."""
    current = (now or datetime.now(UTC)).astimezone(UTC)
    end = current.replace(minute=0, second=0, microsecond=0)
    return TimeWindow(start=end - timedelta(hours=hours), end=end)


class PolicyGuard:
    """Evaluates :class:`PolicyConfig` toggles and :class:`LimitsConfig` bounds."""

    def __init__(self, policy: PolicyConfig, limits: LimitsConfig) -> None:
        self._policy = policy
        self._limits = limits

    @property
    def policy(self) -> PolicyConfig:
        return self._policy

    def check_explicit_window(self, has_window: bool) -> None:
        if self._policy.require_explicit_window and not has_window:
            raise ExplicitWindowRequiredError(
                "An explicit window is required. Pass --from and --to "
                "(policy.require_explicit_window = true)."
            )

    def check_dry_run(self, plan_exists: bool) -> None:
        if self._policy.require_dry_run_before_run and not plan_exists:
            raise DryRunRequiredError(
                "No stored plan found. Run `tidefill plan` first and pass its --plan-id "
                "(policy.require_dry_run_before_run = true)."
            )

    def check_overlap(
        self,
        target: TargetDescriptor,
        plan_id: str,
        runs: list[BackfillRun],
        force: bool = False,
    ) -> None:
        """Refuse when another plan has a non-terminal run on the same target."""
        if not self._policy.block_overlapping_runs:
            return
        conflicts = sorted(
            run.plan_id
            for run in runs
            if run.target == target.qualified and run.plan_id != plan_id and not run.status.is_terminal
        )
        if not conflicts:
            return
        if force:
            logger.warning(
                "Overlapping run(s) %s on %s ignored (--force-overlap)",
                ", ".join(conflicts),
                target,
                extra={"plan_id": plan_id},
            )
            return
        raise OverlappingRunError(
            f"Target {target} already has an active backfill ({', '.join(conflicts)}). "
            "Finish or cancel it first, or pass --force-overlap."
        )

    def check_limits(self, window: TimeWindow, chunk_hours: float, allow_large_window: bool = False) -> None:
        validate_window(window, chunk_hours, self._limits, allow_large_window=allow_large_window)

    def relaxed_policies(self) -> list[str]:
        """Names of policy toggles that are switched off."""
        return sorted(name for name, enabled in self._policy.model_dump().items() if not enabled)
