from __future__ import annotations

import duckdb
import pytest

from errors import QueryError, StorageError
from retry import RetryPolicy, is_store_contention, with_retry


def _contention() -> StorageError:
    try:
        raise duckdb.TransactionException("Conflict on tuple deletion")
    except duckdb.TransactionException as cause:
        try:
            raise StorageError("Failed to store CSV data: conflict") from cause
        except StorageError as exc:
            return exc


def test_success_needs_no_retry() -> None:
    sleeps: list[float] = []
    result = with_retry(lambda: 42, RetryPolicy(max_attempts=3), sleep=sleeps.append)
    assert result == 42
    assert sleeps == []


def test_retryable_errors_are_retried_until_success() -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise _contention()
        return "stored"

    policy = RetryPolicy(
        max_attempts=3, base_delay=0.5, jitter=0.0, retryable=is_store_contention
    )
    assert with_retry(operation, policy, sleep=sleeps.append) == "stored"
    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]


def test_last_error_is_raised_when_attempts_run_out() -> None:
    attempts: list[int] = []

    def operation() -> None:
        attempts.append(1)
        raise _contention()

    policy = RetryPolicy(max_attempts=2, base_delay=0.1, retryable=is_store_contention)
    with pytest.raises(StorageError):
        with_retry(operation, policy, sleep=lambda _: None)
    assert len(attempts) == 2


def test_non_retryable_errors_are_raised_immediately() -> None:
    attempts: list[int] = []

    def operation() -> None:
        attempts.append(1)
        raise QueryError("bad filter")

    policy = RetryPolicy(max_attempts=5, retryable=is_store_contention)
    with pytest.raises(QueryError):
        with_retry(operation, policy, sleep=lambda _: None)
    assert len(attempts) == 1


def test_delay_is_capped() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=3.0, backoff_factor=10.0, jitter=0.0)
    assert policy.delay_for(1) == 1.0
    assert policy.delay_for(2) == 3.0


def test_only_transaction_conflicts_count_as_contention() -> None:
    assert is_store_contention(_contention()) is True
    assert is_store_contention(StorageError("disk full")) is False
    assert is_store_contention(duckdb.TransactionException("conflict")) is False
