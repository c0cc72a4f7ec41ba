"""Domain layer - Pure domain entities and port interfaces.

This layer contains:
- Entities: Pure data structures representing devices, jobs and results
- Ports: Abstract interfaces defining contracts for adapters

No infrastructure dependencies allowed in this layer.
"""

from .entities import (
    ApplyMode,
    ChangeKind,
    DeviceDiff,
    DeviceRecord,
    DeviceStatus,
    DeviceSyncState,
    DeviceWorkflowResult,
    ExternalDevicePage,
    FailureReason,
    HubDevicePage,
    JobKind,
    JobStatus,
    ManualBatchResult,
    OperationResult,
    OutcomeKind,
    PageCursor,
    PageTransferResult,
    ReconciliationResult,
    RetryOutcome,
    RetryPolicy,
    SyncJob,
)
from .ports import (
    IEffectLogStore,
    IExternalRegistry,
    IHubRegistry,
    IStagingStore,
)

__all__ = [
    # Device Entities
    "DeviceRecord",
    "DeviceStatus",
    "ChangeKind",
    "ExternalDevicePage",
    "HubDevicePage",
    "DeviceDiff",
    # Job Entities
    "SyncJob",
    "JobKind",
    "JobStatus",
    # Transfer Entities
    "PageCursor",
    "PageTransferResult",
    # Results
    "OperationResult",
    "OutcomeKind",
    "RetryOutcome",
    "RetryPolicy",
    "DeviceSyncState",
    "FailureReason",
    "DeviceWorkflowResult",
    "ManualBatchResult",
    "ApplyMode",
    "ReconciliationResult",
    # Ports
    "IExternalRegistry",
    "IHubRegistry",
    "IStagingStore",
    "IEffectLogStore",
]
