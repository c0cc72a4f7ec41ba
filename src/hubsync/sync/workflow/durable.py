"""Durable workflow execution with an append-only effect log.

An orchestration is an ``async def orchestration(ctx, input)`` function
that performs every external effect through its WorkflowContext:

    - ``ctx.call(name, func, ...)`` for an activity returning JSON data
    - ``ctx.call_operation(name, func, ...)`` for an activity returning an
      OperationResult
    - ``ctx.now()`` to read the clock
    - ``ctx.sleep(seconds)`` for a durable timer

Every effect is recorded in the instance's effect log. When an instance is
resumed after a crash or restart, the orchestration function runs again
from the top; effects already in the log return their recorded results
instead of executing again, so completed external calls and elapsed
timers are never repeated. An orchestration that asks for a different
effect than the log holds at the same position is rejected with
NonDeterministicWorkflowError.

Records are plain JSON documents:

    {"sequence": 3, "name": "external.create#1", "status": "completed",
     "payload": {...}, "recorded_at": 1700000000.0}
"""

import asyncio
import functools
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ...api.exceptions import EffectFailedError, NonDeterministicWorkflowError
from ...api.resilience import OperationResult
from ..domain.ports import IEffectLogStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]
Orchestration = Callable[["WorkflowContext", Any], Awaitable[Any]]

STARTED = "workflow.started"
COMPLETED = "workflow.completed"
FAILED = "workflow.failed"
TIMER = "timer"
CLOCK = "clock.now"


class EffectStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class EffectRecord:
    """One entry of an instance's effect log."""

    sequence: int
    name: str
    status: EffectStatus
    payload: Any = None
    recorded_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "name": self.name,
            "status": self.status.value,
            "payload": self.payload,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EffectRecord":
        return cls(
            sequence=int(data["sequence"]),
            name=data["name"],
            status=EffectStatus(data["status"]),
            payload=data.get("payload"),
            recorded_at=float(data.get("recorded_at") or 0.0),
        )


def _error_payload(exc: BaseException) -> dict[str, Any]:
    return {
        "error_type": exc.__class__.__name__,
        "message": getattr(exc, "message", None) or str(exc),
    }


class WorkflowContext:
    """Records and replays the effects of one workflow instance.

    Sequence numbers are allocated synchronously when an effect starts, so
    effects started concurrently from ``asyncio.gather`` get positions in
    the order they were started.
    """

    def __init__(
        self,
        instance_id: str,
        store: IEffectLogStore,
        history: list[EffectRecord] | None = None,
        clock: Clock = time.time,
        sleeper: Sleeper = asyncio.sleep,
        start_sequence: int = 1,
    ):
        self.instance_id = instance_id
        self._store = store
        self._history: dict[int, EffectRecord] = {r.sequence: r for r in (history or [])}
        self._last_recorded = max(self._history, default=start_sequence - 1)
        self._clock = clock
        self._sleeper = sleeper
        self._next_sequence = start_sequence

    @property
    def is_replaying(self) -> bool:
        """True while the orchestration is re-walking recorded history."""
        return self._next_sequence <= self._last_recorded

    def log(self, level: int, message: str) -> None:
        """Log unless replaying, so each line appears once per instance."""
        if not self.is_replaying:
            logger.log(level, f"[{self.instance_id}] {message}")

    # ----------------------------------------
    # History bookkeeping
    # ----------------------------------------

    def _allocate(self, name: str) -> tuple[int, EffectRecord | None]:
        sequence = self._next_sequence
        self._next_sequence += 1
        recorded = self._history.get(sequence)
        if recorded is not None and recorded.name != name:
            raise NonDeterministicWorkflowError(
                self.instance_id, sequence, expected=recorded.name, actual=name
            )
        return sequence, recorded

    async def _record(
        self,
        sequence: int,
        name: str,
        status: EffectStatus,
        payload: Any,
    ) -> EffectRecord:
        record = EffectRecord(
            sequence=sequence,
            name=name,
            status=status,
            payload=payload,
            recorded_at=self._clock(),
        )
        await self._store.append(self.instance_id, record.to_dict())
        self._history[sequence] = record
        return record

    # ----------------------------------------
    # Effects
    # ----------------------------------------

    async def call(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run an activity once; replay its recorded result afterwards.

        The activity's return value must be JSON-serializable. An exception
        is recorded as a failure and re-raised; on replay a recorded
        failure raises EffectFailedError.
        """
        sequence, recorded = self._allocate(name)
        if recorded is not None:
            if recorded.status == EffectStatus.FAILED:
                raise EffectFailedError(name, recorded.payload)
            return recorded.payload

        try:
            value = await func(*args, **kwargs)
        except Exception as e:
            await self._record(sequence, name, EffectStatus.FAILED, _error_payload(e))
            raise

        await self._record(sequence, name, EffectStatus.COMPLETED, value)
        return value

    async def call_operation(
        self,
        name: str,
        func: Callable[..., Awaitable[OperationResult]],
        *args,
        **kwargs,
    ) -> OperationResult:
        """Run an activity that reports an OperationResult.

        Exceptions are classified into the result rather than raised, so
        the recorded outcome is always replayable as data.
        """
        sequence, recorded = self._allocate(name)
        if recorded is not None:
            return OperationResult.from_dict(recorded.payload)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            result = OperationResult.from_exception(e)

        await self._record(sequence, name, EffectStatus.COMPLETED, result.to_dict())
        return result

    async def now(self) -> float:
        """Current time, recorded so replays see the same value."""
        sequence, recorded = self._allocate(CLOCK)
        if recorded is not None:
            return float(recorded.payload)
        value = self._clock()
        await self._record(sequence, CLOCK, EffectStatus.COMPLETED, value)
        return value

    async def sleep(self, seconds: float) -> None:
        """Durable timer.

        The fire time is recorded before waiting. A replayed timer that is
        followed by later history has already fired and returns at once;
        the most recent timer waits only for whatever time is left.
        """
        sequence, recorded = self._allocate(TIMER)
        if recorded is not None:
            if sequence < self._last_recorded:
                return
            remaining = float(recorded.payload["fire_at"]) - self._clock()
            if remaining > 0:
                await self._sleeper(remaining)
            return

        fire_at = self._clock() + seconds
        await self._record(
            sequence, TIMER, EffectStatus.COMPLETED, {"fire_at": fire_at, "seconds": seconds}
        )
        if seconds > 0:
            await self._sleeper(seconds)

    def next_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence += 1
        return sequence


class DirectRunner:
    """Runs effects immediately with no log.

    Used where durability is not wanted, such as the single direct attempt
    made while handling a device event. Exposes the same surface as
    WorkflowContext so retry loops and activities accept either.
    """

    instance_id = "direct"
    is_replaying = False

    def __init__(self, clock: Clock = time.time, sleeper: Sleeper = asyncio.sleep):
        self._clock = clock
        self._sleeper = sleeper

    def log(self, level: int, message: str) -> None:
        logger.log(level, message)

    async def call(self, name: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        return await func(*args, **kwargs)

    async def call_operation(
        self,
        name: str,
        func: Callable[..., Awaitable[OperationResult]],
        *args,
        **kwargs,
    ) -> OperationResult:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            return OperationResult.from_exception(e)

    async def now(self) -> float:
        return self._clock()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await self._sleeper(seconds)


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowOutcome:
    """Final state of a workflow instance."""

    instance_id: str
    name: str
    status: WorkflowStatus
    output: Any = None
    error: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED


class WorkflowRuntime:
    """Registers orchestrations and runs their instances.

    Instances run as independent asyncio tasks. The effect log store is
    the only state that survives a restart; ``resume`` rebuilds an
    instance from it.

    Example:
        runtime = WorkflowRuntime(InMemoryEffectLogStore())
        runtime.register("device.create", create_orchestration)
        instance_id = await runtime.start_new("device.create", {"device_id": "d1"})
        outcome = await runtime.wait(instance_id)
    """

    def __init__(
        self,
        store: IEffectLogStore,
        clock: Clock = time.time,
        sleeper: Sleeper = asyncio.sleep,
    ):
        self.store = store
        self._clock = clock
        self._sleeper = sleeper
        self._orchestrations: dict[str, Orchestration] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def register(self, name: str, orchestration: Orchestration) -> None:
        if name in self._orchestrations:
            raise ValueError(f"Orchestration '{name}' already registered")
        self._orchestrations[name] = orchestration

    @property
    def registered(self) -> list[str]:
        return sorted(self._orchestrations)

    async def start_new(
        self,
        name: str,
        input: Any = None,
        instance_id: str | None = None,
    ) -> str:
        """Persist the start record and schedule the instance.

        Returns:
            The instance id.
        """
        if name not in self._orchestrations:
            raise KeyError(f"Unknown orchestration '{name}'")

        instance_id = instance_id or uuid.uuid4().hex
        existing = await self.store.load(instance_id)
        if existing:
            raise ValueError(f"Workflow instance '{instance_id}' already exists")

        start = EffectRecord(
            sequence=0,
            name=STARTED,
            status=EffectStatus.COMPLETED,
            payload={"orchestration": name, "input": input},
            recorded_at=self._clock(),
        )
        await self.store.append(instance_id, start.to_dict())
        logger.info(f"Started workflow {name} as instance {instance_id}")

        self._schedule(instance_id)
        return instance_id

    async def run(self, name: str, input: Any = None, instance_id: str | None = None) -> WorkflowOutcome:
        """Start an instance and wait for it to finish."""
        instance_id = await self.start_new(name, input, instance_id)
        return await self.wait(instance_id)

    async def resume(self, instance_id: str) -> WorkflowOutcome:
        """Continue an instance from its effect log."""
        task = self._tasks.get(instance_id)
        if task is None or task.done():
            self._schedule(instance_id)
        return await self.wait(instance_id)

    async def wait(self, instance_id: str) -> WorkflowOutcome:
        """Outcome of an instance, from its running task or its effect log."""
        task = self._tasks.get(instance_id)
        if task is None:
            return await self._execute(instance_id)
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._tasks.get(instance_id) is task:
                del self._tasks[instance_id]

    async def status(self, instance_id: str) -> WorkflowOutcome:
        """Report an instance's state from its effect log."""
        records = [EffectRecord.from_dict(r) for r in await self.store.load(instance_id)]
        if not records or records[0].name != STARTED:
            raise KeyError(f"Unknown workflow instance '{instance_id}'")
        name = records[0].payload["orchestration"]
        terminal = self._terminal_outcome(instance_id, name, records)
        return terminal or WorkflowOutcome(instance_id, name, WorkflowStatus.RUNNING)

    async def resume_pending(self) -> list[str]:
        """Reschedule every stored instance that has not finished.

        Returns:
            Instance ids that were rescheduled.
        """
        resumed: list[str] = []
        for instance_id in await self.store.list_instances():
            task = self._tasks.get(instance_id)
            if task is not None and not task.done():
                continue
            try:
                outcome = await self.status(instance_id)
            except KeyError:
                logger.warning(f"Skipping instance {instance_id}: effect log has no start record")
                continue
            if outcome.status == WorkflowStatus.RUNNING:
                self._schedule(instance_id)
                resumed.append(instance_id)

        if resumed:
            logger.info(f"Resumed {len(resumed)} unfinished workflow instance(s)")
        return resumed

    @property
    def active_instances(self) -> list[str]:
        return sorted(self._tasks)

    def _schedule(self, instance_id: str) -> None:
        task = asyncio.create_task(self._execute(instance_id), name=f"workflow-{instance_id}")
        self._tasks[instance_id] = task
        task.add_done_callback(functools.partial(self._forget, instance_id))

    def _forget(self, instance_id: str, task: asyncio.Task) -> None:
        # A clean finish is in the effect log; a crash stays until wait() reports it
        if task.cancelled() or task.exception() is not None:
            return
        if self._tasks.get(instance_id) is task:
            del self._tasks[instance_id]

    @staticmethod
    def _terminal_outcome(
        instance_id: str,
        name: str,
        records: list[EffectRecord],
    ) -> WorkflowOutcome | None:
        last = records[-1]
        if last.name == COMPLETED:
            return WorkflowOutcome(instance_id, name, WorkflowStatus.COMPLETED, output=last.payload)
        if last.name == FAILED:
            return WorkflowOutcome(instance_id, name, WorkflowStatus.FAILED, error=last.payload or {})
        return None

    async def _execute(self, instance_id: str) -> WorkflowOutcome:
        records = [EffectRecord.from_dict(r) for r in await self.store.load(instance_id)]
        if not records or records[0].name != STARTED:
            raise KeyError(f"Unknown workflow instance '{instance_id}'")

        name = records[0].payload["orchestration"]
        workflow_input = records[0].payload.get("input")

        terminal = self._terminal_outcome(instance_id, name, records)
        if terminal is not None:
            return terminal

        orchestration = self._orchestrations.get(name)
        if orchestration is None:
            raise KeyError(f"Unknown orchestration '{name}'")

        ctx = WorkflowContext(
            instance_id,
            self.store,
            history=records[1:],
            clock=self._clock,
            sleeper=self._sleeper,
        )

        try:
            output = await orchestration(ctx, workflow_input)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            payload = _error_payload(e)
            await ctx._record(ctx.next_sequence(), FAILED, EffectStatus.COMPLETED, payload)
            logger.error(f"Workflow {name} instance {instance_id} failed: {e}")
            return WorkflowOutcome(instance_id, name, WorkflowStatus.FAILED, error=payload)

        await ctx._record(ctx.next_sequence(), COMPLETED, EffectStatus.COMPLETED, output)
        logger.info(f"Workflow {name} instance {instance_id} completed")
        return WorkflowOutcome(instance_id, name, WorkflowStatus.COMPLETED, output=output)


__all__ = [
    "EffectStatus",
    "EffectRecord",
    "WorkflowContext",
    "DirectRunner",
    "WorkflowStatus",
    "WorkflowOutcome",
    "WorkflowRuntime",
]
