"""Use cases layer - Business logic orchestration for registry sync.

This layer contains the workflows that keep the two registries aligned:
- Bulk reconciliation from the external registry into the hub
- Per-device create/delete from the hub into the external registry
- The building blocks they share (diff, paged transfer, job polling)

Use cases depend only on ports, not concrete implementations.
"""

from .device_events import DeviceEventDispatcher
from .device_sync import DeviceDeleteOrchestrator, DeviceSyncOrchestrator
from .diff_devices import DeviceSetDiffer
from .hub_facade import HubDeviceFacade
from .job_poller import JobPoller
from .paged_transfer import PagedBulkTransfer
from .reconcile import ReconciliationOrchestrator

__all__ = [
    "DeviceEventDispatcher",
    "DeviceDeleteOrchestrator",
    "DeviceSyncOrchestrator",
    "DeviceSetDiffer",
    "HubDeviceFacade",
    "JobPoller",
    "PagedBulkTransfer",
    "ReconciliationOrchestrator",
]
