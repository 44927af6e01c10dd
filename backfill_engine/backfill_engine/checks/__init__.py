"""CI check over stored backfill state."""

from backfill_engine.checks.backfill_check import (
    CheckFinding,
    CheckReport,
    FindingSeverity,
    evaluate_backfill_check,
)

__all__ = ["CheckFinding", "CheckReport", "FindingSeverity", "evaluate_backfill_check"]
