"""Durable workflow layer - replayable orchestrations over an effect log."""

from .durable import (
    DirectRunner,
    EffectRecord,
    EffectStatus,
    WorkflowContext,
    WorkflowOutcome,
    WorkflowRuntime,
    WorkflowStatus,
)

__all__ = [
    "DirectRunner",
    "EffectRecord",
    "EffectStatus",
    "WorkflowContext",
    "WorkflowOutcome",
    "WorkflowRuntime",
    "WorkflowStatus",
]
