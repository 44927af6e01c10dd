"""Exponential backoff shared by chunk retries and metadata queries.

Chunk execution drives its own attempt loop (every attempt is checkpointed)
and only borrows :func:`compute_delay`.  Read-only store calls such as schema
introspection go through :func:`retry_with_backoff` directly.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Attempt budget and backoff bounds."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Total attempts, the first one included.",
    )
    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay in seconds before the second attempt; doubles afterwards.",
    )
    max_delay: float = Field(
        default=60.0,
        ge=0.0,
        description="Upper bound on a single delay in seconds.",
    )

    @classmethod
    def from_milliseconds(cls, max_attempts: int, delay_ms: int, max_delay_ms: int) -> RetryConfig:
        return cls(max_attempts=max_attempts, base_delay=delay_ms / 1000.0, max_delay=max_delay_ms / 1000.0)


def compute_delay(failed_attempts: int, config: RetryConfig) -> float:
    """Seconds to wait after *failed_attempts* consecutive failures (>= 1).

    ``base_delay * 2 ** (failed_attempts - 1)``, capped at ``max_delay``.
    """
    exponent = max(failed_attempts - 1, 0)
    return min(config.base_delay * (2**exponent), config.max_delay)


def retry_with_backoff(
    fn: Callable[[], T],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds or *config.max_attempts* is reached.

    Parameters
    ----------
    fn:
        Zero-argument callable; must be idempotent since it may run again.
    config:
        Attempt budget and delays.
    retryable_exceptions:
        Exception types that trigger another attempt; anything else is
        raised at once.
    sleep:
        Sleep function, replaceable in tests.

    Raises
    ------
    Exception
        The last exception raised by *fn* once all attempts are used.
    """
    last_error: Exception | None = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return fn()
        except retryable_exceptions as exc:
            last_error = exc
            if attempt >= config.max_attempts:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt,
                config.max_attempts - 1,
                delay,
                exc,
            )
            sleep(delay)

    assert last_error is not None  # noqa: S101
    raise last_error
