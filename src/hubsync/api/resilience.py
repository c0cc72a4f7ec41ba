#!/usr/bin/env python3
"""Resilience Patterns for registry synchronization.

This module provides the pieces every retrying call site shares:
    - RetryPolicy: bounded exponential backoff, by attempts and by total time
    - OperationResult: the typed outcome of one external effect
    - retry_with_policy: the single retry loop, driven through a runner
    - process_concurrent: bounded concurrency for batch work

Retries are classified on OperationResult.outcome, never on exception
type. Adapters decide whether a failure is a no-op ("already exists",
"not found"), transient or permanent; the loop only reads that verdict.

The loop does not sleep or read the clock on its own. It asks the runner
(a durable WorkflowContext or a DirectRunner), so waits between attempts
are recorded and survive a process restart.

Example:
    policy = RetryPolicy(initial_interval=60, backoff_coefficient=2,
                         max_interval=300, max_attempts=5)
    outcome = await retry_with_policy(
        ctx, "external.create", registry.create_device, policy,
        device_id, properties,
    )
    if not outcome.succeeded:
        logger.error(f"Create failed after {outcome.attempts} attempts")
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ============================================
# Retry Policy
# ============================================

@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff bounded by attempt count and elapsed time.

    Attributes:
        initial_interval: Delay in seconds after the first failed attempt.
        backoff_coefficient: Multiplier applied to the delay per attempt.
        max_interval: Upper bound on a single delay.
        max_attempts: Maximum number of attempts, including the first.
        total_timeout: Overall budget in seconds measured from the first
            attempt; None for no time bound.
    """
    initial_interval: float
    backoff_coefficient: float = 2.0
    max_interval: float = 300.0
    max_attempts: int = 5
    total_timeout: Optional[float] = None

    def __post_init__(self):
        if self.initial_interval < 0:
            raise ValueError("initial_interval must be >= 0")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.max_interval)

    def should_retry(self, attempt: int, elapsed: float) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts."""
        if attempt >= self.max_attempts:
            return False
        if self.total_timeout is not None and elapsed >= self.total_timeout:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "initial_interval": self.initial_interval,
            "backoff_coefficient": self.backoff_coefficient,
            "max_interval": self.max_interval,
            "max_attempts": self.max_attempts,
            "total_timeout": self.total_timeout,
        }


# ============================================
# Operation Results
# ============================================

class OutcomeKind(str, Enum):
    """Classification of a single external effect."""
    SUCCESS = "success"
    NOOP = "noop"            # Idempotent no-op: already exists / already gone
    TRANSIENT = "transient"  # Retry under policy
    PERMANENT = "permanent"  # Retrying cannot help


@dataclass(frozen=True)
class OperationResult:
    """Explicit outcome of an external-effect operation.

    Attributes:
        outcome: How the operation ended.
        value: JSON-serializable payload on success.
        message: Human-readable explanation for noop and failures.
        error_type: Name of the exception class behind a failure.
    """
    outcome: OutcomeKind
    value: Any = None
    message: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "OperationResult":
        return cls(OutcomeKind.SUCCESS, value=value)

    @classmethod
    def noop(cls, message: str, value: Any = None) -> "OperationResult":
        return cls(OutcomeKind.NOOP, value=value, message=message)

    @classmethod
    def transient(
        cls,
        message: str,
        error_type: Optional[str] = None,
        value: Any = None,
    ) -> "OperationResult":
        return cls(OutcomeKind.TRANSIENT, value=value, message=message, error_type=error_type)

    @classmethod
    def permanent(
        cls,
        message: str,
        error_type: Optional[str] = None,
        value: Any = None,
    ) -> "OperationResult":
        return cls(OutcomeKind.PERMANENT, value=value, message=message, error_type=error_type)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "OperationResult":
        """Classify an exception raised by an adapter.

        Exceptions carrying ``recoverable=True`` (the HubSyncError
        convention), and asyncio/OS level I/O errors, are transient;
        everything else is permanent.
        """
        recoverable = getattr(exc, "recoverable", None)
        if recoverable is None:
            recoverable = isinstance(exc, (asyncio.TimeoutError, OSError))
        message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        kind = OutcomeKind.TRANSIENT if recoverable else OutcomeKind.PERMANENT
        return cls(kind, message=message, error_type=exc.__class__.__name__)

    @property
    def succeeded(self) -> bool:
        """True for success and idempotent no-op."""
        return self.outcome in (OutcomeKind.SUCCESS, OutcomeKind.NOOP)

    @property
    def is_transient(self) -> bool:
        return self.outcome == OutcomeKind.TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "value": self.value,
            "message": self.message,
            "error_type": self.error_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperationResult":
        return cls(
            outcome=OutcomeKind(data["outcome"]),
            value=data.get("value"),
            message=data.get("message"),
            error_type=data.get("error_type"),
        )


@dataclass(frozen=True)
class RetryOutcome:
    """Final result of a retry loop.

    Attributes:
        result: The last OperationResult observed.
        attempts: Number of attempts made.
        exhausted: True when the loop stopped because the policy ran out
            while the last result was still transient.
    """
    result: OperationResult
    attempts: int
    exhausted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.result.succeeded


# ============================================
# Policy-Driven Retry Loop
# ============================================

async def retry_with_policy(
    runner,
    name: str,
    func: Callable[..., Awaitable[OperationResult]],
    policy: RetryPolicy,
    *args,
    **kwargs,
) -> RetryOutcome:
    """Call ``func`` through ``runner`` until it succeeds or the policy ends.

    Each attempt is one runner effect named ``{name}#{attempt}``, and each
    wait is a runner sleep, so a durable runner replays completed attempts
    and waits instead of repeating them.

    Args:
        runner: Object exposing ``call_operation``, ``now`` and ``sleep``
            (WorkflowContext or DirectRunner).
        name: Effect name prefix used for recording.
        func: Async callable returning an OperationResult. Exceptions it
            raises are classified with OperationResult.from_exception.
        policy: Retry bounds and backoff.
        *args: Arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        RetryOutcome with the final result and attempt count.
    """
    started_at = await runner.now()
    attempt = 0

    while True:
        attempt += 1
        result = await runner.call_operation(f"{name}#{attempt}", func, *args, **kwargs)

        if result.succeeded:
            return RetryOutcome(result=result, attempts=attempt)

        if result.outcome == OutcomeKind.PERMANENT:
            runner.log(
                logging.ERROR,
                f"{name} failed permanently on attempt {attempt}: {result.message}",
            )
            return RetryOutcome(result=result, attempts=attempt)

        elapsed = await runner.now() - started_at
        if not policy.should_retry(attempt, elapsed):
            runner.log(
                logging.WARNING,
                f"{name} gave up after {attempt} attempt(s) "
                f"({elapsed:.0f}s elapsed): {result.message}",
            )
            return RetryOutcome(result=result, attempts=attempt, exhausted=True)

        delay = policy.delay_for(attempt)
        runner.log(
            logging.WARNING,
            f"{name} attempt {attempt}/{policy.max_attempts} failed: "
            f"{result.message}. Retrying in {delay:.0f}s",
        )
        await runner.sleep(delay)


# ============================================
# Concurrent Processing
# ============================================

async def process_concurrent(
    items: list[T],
    processor: Callable[[T], Awaitable[Any]],
    max_concurrent: int = 10,
    return_exceptions: bool = False,
) -> list[Any]:
    """Process items concurrently with bounded concurrency.

    Args:
        items: List of items to process
        processor: Async function to apply to each item
        max_concurrent: Maximum concurrent operations (default: 10)
        return_exceptions: If True, return exceptions instead of raising

    Returns:
        List of results in the same order as input items
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def bounded_processor(item: T) -> Any:
        async with semaphore:
            return await processor(item)

    tasks = [bounded_processor(item) for item in items]
    return await asyncio.gather(*tasks, return_exceptions=return_exceptions)


__all__ = [
    "RetryPolicy",
    "OutcomeKind",
    "OperationResult",
    "RetryOutcome",
    "retry_with_policy",
    "process_concurrent",
]
