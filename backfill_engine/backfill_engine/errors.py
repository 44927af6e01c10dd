"""Exception taxonomy for the backfill engine.

Four families, each handled differently by callers:

* :class:`ConfigurationError` -- malformed input (window, chunk size, time
  column, settings).  Raised before anything is persisted or executed and
  never retried.
* :class:`PolicyViolationError` -- the input is well formed but the operation
  is unsafe under the active policy (overlapping run, missing dry-run plan).
* :class:`CheckpointError` -- durable state could not be read or written.
  Fatal to the in-flight chunk attempt.
* :class:`ChunkExecutionError` -- a single chunk's statement failed against
  the store.  Retried locally by the execution engine and recorded as a
  per-chunk outcome; it never escapes a run.
"""

from __future__ import annotations


class BackfillError(Exception):
    """Base class for every error raised by the backfill engine."""


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(BackfillError):
    """The request or the configuration is malformed."""


class SettingsError(ConfigurationError):
    """Layered settings failed validation (unknown key, wrong type, ...)."""


class InvalidTargetError(ConfigurationError):
    """The target is not of the form ``database.table``."""


class InvalidWindowError(ConfigurationError):
    """The time window is empty, inverted, or cannot be parsed."""


class WindowTooLargeError(ConfigurationError):
    """The window exceeds ``limits.max_window_hours`` and no override was given."""


class ChunkTooSmallError(ConfigurationError):
    """``chunk_hours`` is below ``limits.min_chunk_minutes``."""


class NoTimeColumnFoundError(ConfigurationError):
    """No explicit, configured, or detectable time column exists for the target."""


class AmbiguousTimeColumnError(ConfigurationError):
    """The time column cannot be attributed to exactly one filtered table."""


class IdempotencyTokenRequiredError(ConfigurationError):
    """A materialized-view replay was planned with idempotency tokens disabled."""


class SchemaLoadError(ConfigurationError):
    """The schema metadata file could not be parsed."""


class PlanNotFoundError(ConfigurationError):
    """No plan is stored under the requested id."""


class PlanAlreadyExistsError(ConfigurationError):
    """A different plan is already stored under the same id."""


class RunNotFoundError(ConfigurationError):
    """No run checkpoint exists for the plan."""


class RunCompatibilityError(ConfigurationError):
    """The stored run was created under different plan or execution options."""


class RunAlreadyCompletedError(ConfigurationError):
    """The operation is not allowed on a completed run."""


# ---------------------------------------------------------------------------
# Policy errors
# ---------------------------------------------------------------------------


class PolicyViolationError(BackfillError):
    """The operation is refused by an active safety policy."""


class ExplicitWindowRequiredError(PolicyViolationError):
    """``policy.require_explicit_window`` is on and no window was supplied."""


class DryRunRequiredError(PolicyViolationError):
    """``policy.require_dry_run_before_run`` is on and no stored plan exists."""


class OverlappingRunError(PolicyViolationError):
    """Another non-terminal run already targets the same table."""


class RunCancelledError(PolicyViolationError):
    """The run was cancelled by an operator; cancelled runs are never restarted."""


# ---------------------------------------------------------------------------
# Persistence and execution errors
# ---------------------------------------------------------------------------


class CheckpointError(BackfillError):
    """Reading or writing durable backfill state failed."""


class ChunkExecutionError(BackfillError):
    """A chunk statement failed against the store."""

    def __init__(self, chunk_index: int, message: str) -> None:
        super().__init__(message)
        self.chunk_index = chunk_index
