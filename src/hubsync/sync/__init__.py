"""Sync module - Clean Architecture implementation of hub/external registry sync.

Architecture:
    domain/     - Pure domain entities and port interfaces
    workflow/   - Durable, replayable orchestration runtime
    use_cases/  - Reconciliation and per-device workflows
    adapters/   - Infrastructure implementations (hub API, Actility, staging, effect log)
"""

from .domain.entities import (
    DeviceDiff,
    DeviceRecord,
    DeviceWorkflowResult,
    ReconciliationResult,
    SyncJob,
)
from .domain.ports import (
    IEffectLogStore,
    IExternalRegistry,
    IHubRegistry,
    IStagingStore,
)

__all__ = [
    # Entities
    "DeviceDiff",
    "DeviceRecord",
    "SyncJob",
    # Results
    "DeviceWorkflowResult",
    "ReconciliationResult",
    # Ports
    "IEffectLogStore",
    "IExternalRegistry",
    "IHubRegistry",
    "IStagingStore",
]
