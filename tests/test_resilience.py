#!/usr/bin/env python3
"""Tests for retry policies and operation results.

Tests cover:
    - Exponential backoff delays and their cap
    - Retry bounding by attempt count and by elapsed time
    - Classification of exceptions into transient/permanent outcomes
    - The policy-driven retry loop (success, noop, permanent, exhaustion)
    - Bounded concurrent processing
"""
import asyncio

import pytest

from src.hubsync.api.exceptions import (
    ConflictError,
    NetworkError,
    PermanentValidationError,
    RateLimitError,
    ServerError,
    TransientExternalError,
    ValidationError,
)
from src.hubsync.api.resilience import (
    OperationResult,
    OutcomeKind,
    RetryPolicy,
    process_concurrent,
    retry_with_policy,
)
from src.hubsync.sync.workflow.durable import DirectRunner


# ============================================
# RetryPolicy
# ============================================

class TestRetryPolicy:
    """Backoff arithmetic and stop conditions."""

    def test_backoff_sequence_is_capped(self):
        policy = RetryPolicy(initial_interval=60, backoff_coefficient=2, max_interval=300)
        delays = [policy.delay_for(attempt) for attempt in range(1, 7)]
        assert delays == [60, 120, 240, 300, 300, 300]

    def test_fixed_interval_with_coefficient_one(self):
        policy = RetryPolicy(initial_interval=30, backoff_coefficient=1.0, max_interval=30)
        assert [policy.delay_for(n) for n in range(1, 4)] == [30, 30, 30]

    def test_stops_at_max_attempts(self):
        policy = RetryPolicy(initial_interval=1, max_attempts=5)
        assert policy.should_retry(4, elapsed=0)
        assert not policy.should_retry(5, elapsed=0)

    def test_stops_when_total_timeout_elapsed(self):
        policy = RetryPolicy(initial_interval=1, max_attempts=100, total_timeout=60)
        assert policy.should_retry(1, elapsed=59.9)
        assert not policy.should_retry(1, elapsed=60)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"initial_interval": -1},
            {"initial_interval": 1, "backoff_coefficient": 0.5},
            {"initial_interval": 1, "max_attempts": 0},
        ],
    )
    def test_rejects_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


# ============================================
# OperationResult
# ============================================

class TestOperationResultClassification:
    """from_exception maps the recoverable flag onto outcomes."""

    @pytest.mark.parametrize(
        "exc",
        [
            ServerError("boom", status_code=503),
            RateLimitError("slow down", retry_after=5),
            NetworkError("unreachable"),
            TransientExternalError("twin not ready"),
            asyncio.TimeoutError(),
            OSError("reset by peer"),
        ],
    )
    def test_transient(self, exc):
        result = OperationResult.from_exception(exc)
        assert result.outcome == OutcomeKind.TRANSIENT
        assert result.error_type == exc.__class__.__name__

    @pytest.mark.parametrize(
        "exc",
        [
            ValidationError("bad payload"),
            ConflictError("exists"),
            PermanentValidationError("EUI too short", field="EUI"),
            ValueError("unexpected"),
        ],
    )
    def test_permanent(self, exc):
        assert OperationResult.from_exception(exc).outcome == OutcomeKind.PERMANENT

    def test_noop_counts_as_succeeded(self):
        assert OperationResult.noop("already gone").succeeded
        assert OperationResult.success().succeeded
        assert not OperationResult.transient("later").succeeded

    def test_dict_form_survives_json_types(self):
        result = OperationResult.transient("later", error_type="ServerError", value={"n": 1})
        assert OperationResult.from_dict(result.to_dict()) == result


# ============================================
# retry_with_policy
# ============================================

class ScriptedOperation:
    """Returns scripted results, then repeats the last one."""

    def __init__(self, *results: OperationResult):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, *args, **kwargs) -> OperationResult:
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class TestRetryWithPolicy:
    """Retry loop driven through a DirectRunner with a fake clock."""

    @pytest.fixture
    def runner(self, clock):
        return DirectRunner(clock=clock, sleeper=clock.sleep)

    @pytest.mark.asyncio
    async def test_success_first_try(self, runner, clock):
        operation = ScriptedOperation(OperationResult.success("ok"))
        outcome = await retry_with_policy(runner, "op", operation, RetryPolicy(initial_interval=60))

        assert outcome.succeeded
        assert outcome.attempts == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_transient_exhausts_after_max_attempts(self, runner, clock):
        operation = ScriptedOperation(OperationResult.transient("busy"))
        policy = RetryPolicy(initial_interval=60, backoff_coefficient=2, max_interval=300, max_attempts=5)

        outcome = await retry_with_policy(runner, "op", operation, policy)

        assert not outcome.succeeded
        assert outcome.exhausted
        assert outcome.attempts == 5
        assert operation.calls == 5
        assert clock.sleeps == [60, 120, 240, 300]

    @pytest.mark.asyncio
    async def test_noop_ends_retries_as_success(self, runner):
        operation = ScriptedOperation(
            OperationResult.transient("busy"),
            OperationResult.noop("already exists"),
        )
        outcome = await retry_with_policy(runner, "op", operation, RetryPolicy(initial_interval=1))

        assert outcome.succeeded
        assert outcome.result.outcome == OutcomeKind.NOOP
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_permanent_stops_immediately(self, runner, clock):
        operation = ScriptedOperation(OperationResult.permanent("rejected"))
        outcome = await retry_with_policy(runner, "op", operation, RetryPolicy(initial_interval=1))

        assert not outcome.succeeded
        assert not outcome.exhausted
        assert outcome.attempts == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_total_timeout_bounds_attempts(self, runner, clock):
        operation = ScriptedOperation(OperationResult.transient("busy"))
        policy = RetryPolicy(initial_interval=10, max_attempts=100, total_timeout=25)

        outcome = await retry_with_policy(runner, "op", operation, policy)

        assert outcome.exhausted
        assert outcome.attempts == 3
        assert clock.sleeps == [10, 20]

    @pytest.mark.asyncio
    async def test_exceptions_are_classified(self, runner):
        async def flaky():
            raise ServerError("down", status_code=502)

        outcome = await retry_with_policy(
            runner, "op", flaky, RetryPolicy(initial_interval=1, max_attempts=2)
        )
        assert outcome.attempts == 2
        assert outcome.result.error_type == "ServerError"


# ============================================
# process_concurrent
# ============================================

class TestProcessConcurrent:

    @pytest.mark.asyncio
    async def test_preserves_order_and_bounds_concurrency(self):
        active = 0
        peak = 0

        async def work(n: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1
            return n * 2

        results = await process_concurrent(list(range(10)), work, max_concurrent=3)

        assert results == [n * 2 for n in range(10)]
        assert peak <= 3

    @pytest.mark.asyncio
    async def test_return_exceptions(self):
        async def work(n: int) -> int:
            if n == 1:
                raise ValueError("bad")
            return n

        results = await process_concurrent([0, 1, 2], work, return_exceptions=True)
        assert results[0] == 0
        assert isinstance(results[1], ValueError)
        assert results[2] == 2
