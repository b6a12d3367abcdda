"""Explicit retry wrapper with exponential backoff."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import duckdb

import settings
from errors import StorageError
from logger import get_logger

log = get_logger("retry")

T = TypeVar("T")


def _never(exc: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: float = 0.1  # fraction of the computed delay
    retryable: Callable[[BaseException], bool] = field(default=_never)

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        delay += random.uniform(0, self.jitter * delay)
        return min(delay, self.max_delay)


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Errors the policy does not consider retryable are raised immediately.
    After the final attempt the last error is re-raised unchanged.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts):
        try:
            return operation()
        except Exception as exc:
            if not policy.retryable(exc):
                raise
            delay = policy.delay_for(attempt)
            log.warning(
                "Operation failed (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                attempts,
                delay,
                exc,
            )
            sleep(delay)
    return operation()


def is_store_contention(exc: BaseException) -> bool:
    """True for storage failures caused by a DuckDB write conflict."""
    if not isinstance(exc, StorageError):
        return False
    return isinstance(exc.__cause__, duckdb.TransactionException)


STORE_RETRY_POLICY = RetryPolicy(
    max_attempts=settings.STORE_RETRY_ATTEMPTS,
    base_delay=settings.STORE_RETRY_BASE_DELAY,
    max_delay=settings.STORE_RETRY_MAX_DELAY,
    retryable=is_store_contention,
)
