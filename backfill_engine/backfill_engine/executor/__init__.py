"""Chunk execution, retry policy, and store adapters."""

from backfill_engine.executor.base import StoreClient
from backfill_engine.executor.engine import EngineOptions, ExecutionEngine
from backfill_engine.executor.retry import RetryConfig, compute_delay, retry_with_backoff

__all__ = [
    "EngineOptions",
    "ExecutionEngine",
    "RetryConfig",
    "StoreClient",
    "compute_delay",
    "retry_with_backoff",
]
