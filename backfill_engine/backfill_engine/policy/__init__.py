"""Safety policy checks."""

from backfill_engine.policy.guard import PolicyGuard, implicit_window

__all__ = ["PolicyGuard", "implicit_window"]
