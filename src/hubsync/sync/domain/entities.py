"""Domain entities for registry synchronization.

These are pure data structures with no infrastructure dependencies.
They represent the devices, jobs and results exchanged between the
use cases and the registry adapters.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ...api.resilience import OperationResult, OutcomeKind, RetryOutcome, RetryPolicy


class DeviceStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class ChangeKind(str, Enum):
    """Pending change attached to a device in an import batch."""
    NONE = "none"
    CREATE = "create"
    DELETE = "delete"


@dataclass(frozen=True)
class DeviceRecord:
    """Domain entity representing a device in the hub registry.

    Identity is ``id`` and is compared case-sensitively. Records are staged
    as one JSON object per line; ``to_dict``/``from_dict`` define that
    wire format, which is also the hub's bulk import/export line format.
    """

    id: str
    tags: dict[str, str] = field(default_factory=dict)
    status: DeviceStatus = DeviceStatus.ENABLED
    change_kind: ChangeKind = ChangeKind.NONE
    status_reason: str | None = None
    authentication: dict[str, Any] | None = None
    etag: str | None = None

    def with_change(self, change_kind: ChangeKind) -> "DeviceRecord":
        return replace(self, change_kind=change_kind)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "tags": dict(self.tags),
        }
        if self.change_kind != ChangeKind.NONE:
            data["importMode"] = self.change_kind.value
        if self.status_reason:
            data["statusReason"] = self.status_reason
        if self.authentication:
            data["authentication"] = self.authentication
        if self.etag:
            data["eTag"] = self.etag
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceRecord":
        """Build a record from a staged line or a hub API payload."""
        device_id = data.get("id") or data.get("deviceId")
        if not device_id:
            raise ValueError("Device record has no id")

        status = str(data.get("status") or DeviceStatus.ENABLED.value).lower()
        change = str(data.get("importMode") or data.get("changeKind") or ChangeKind.NONE.value).lower()
        tags = data.get("tags") or {}

        return cls(
            id=str(device_id),
            tags={str(k): str(v) for k, v in tags.items()},
            status=DeviceStatus(status),
            change_kind=ChangeKind(change),
            status_reason=data.get("statusReason"),
            authentication=data.get("authentication"),
            etag=data.get("eTag") or data.get("etag"),
        )


@dataclass(frozen=True)
class ExternalDevicePage:
    """One page returned by an external registry listing.

    ``records`` are the registry's own JSON objects, kept opaque; the
    registry adapter knows how to read ids and properties from them.
    """

    page_index: int
    records: list[dict[str, Any]]
    has_more: bool


@dataclass(frozen=True)
class HubDevicePage:
    """One page of hub registry devices."""

    records: list[DeviceRecord]
    has_more: bool


class JobKind(str, Enum):
    EXPORT = "export"
    IMPORT = "import"


class JobStatus(str, Enum):
    """Status of a hub bulk job as reported by the hub."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass(frozen=True)
class SyncJob:
    """A hub bulk export or import job."""

    job_id: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncJob":
        return cls(
            job_id=data["job_id"],
            kind=JobKind(data["kind"]),
            status=JobStatus(data.get("status", JobStatus.UNKNOWN.value)),
            failure_reason=data.get("failure_reason"),
        )


@dataclass(frozen=True)
class PageCursor:
    """Position in an external registry listing.

    Cursors only move forward; ``advance`` returns a new cursor and the
    old value is never handed out again within a run.
    """

    page_index: int = 0
    item_count: int = 0

    def advance(self, items: int) -> "PageCursor":
        return PageCursor(page_index=self.page_index + 1, item_count=self.item_count + items)


@dataclass(frozen=True)
class PageTransferResult:
    """Outcome of one bounded page-transfer call.

    ``last_page_index`` is the next page index to request when
    ``has_more`` is true.
    """

    items_processed: int
    last_page_index: int
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "items_processed": self.items_processed,
            "last_page_index": self.last_page_index,
            "has_more": self.has_more,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PageTransferResult":
        return cls(
            items_processed=int(data["items_processed"]),
            last_page_index=int(data["last_page_index"]),
            has_more=bool(data["has_more"]),
        )


@dataclass
class DeviceDiff:
    """Set difference between a source-of-truth and a destination registry."""

    creates: list[DeviceRecord] = field(default_factory=list)
    deletes: list[DeviceRecord] = field(default_factory=list)

    @property
    def change_count(self) -> int:
        return len(self.creates) + len(self.deletes)

    @property
    def is_empty(self) -> bool:
        return self.change_count == 0

    def changes(self) -> list[DeviceRecord]:
        """Creates followed by deletes, as written to an import batch."""
        return [*self.creates, *self.deletes]


class DeviceSyncState(str, Enum):
    AWAITING_READINESS = "awaiting_readiness"
    VERIFIED = "verified"
    CREATING = "creating"
    DELETING = "deleting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    READINESS_TIMEOUT = "readiness_timeout"
    READINESS_FAILED = "readiness_failed"
    VALIDATION_FAILED = "validation_failed"
    CREATION_FAILED = "creation_failed"
    DELETION_FAILED = "deletion_failed"


@dataclass
class DeviceWorkflowResult:
    """Final state of a per-device create or delete workflow."""

    device_id: str
    state: DeviceSyncState
    failure_reason: FailureReason | None = None
    attempts: int = 0
    message: str | None = None
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == DeviceSyncState.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "state": self.state.value,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "attempts": self.attempts,
            "message": self.message,
            "properties": dict(self.properties),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceWorkflowResult":
        reason = data.get("failure_reason")
        return cls(
            device_id=data["device_id"],
            state=DeviceSyncState(data["state"]),
            failure_reason=FailureReason(reason) if reason else None,
            attempts=int(data.get("attempts", 0)),
            message=data.get("message"),
            properties=dict(data.get("properties") or {}),
        )


@dataclass
class ManualBatchResult:
    """Per-batch counts from applying changes device by device."""

    changed: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_ids": list(self.failed_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManualBatchResult":
        return cls(
            changed=int(data.get("changed", 0)),
            skipped=int(data.get("skipped", 0)),
            failed=int(data.get("failed", 0)),
            failed_ids=list(data.get("failed_ids") or []),
        )


class ApplyMode(str, Enum):
    NONE = "none"
    IMPORT_JOB = "import_job"
    MANUAL = "manual"


@dataclass
class ReconciliationResult:
    """Result of one bulk reconciliation run."""

    run_id: str
    external_device_count: int = 0
    pages: int = 0
    hub_device_count: int = 0
    creates: int = 0
    deletes: int = 0
    apply_mode: ApplyMode = ApplyMode.NONE
    import_job_id: str | None = None
    manual_changed: int = 0
    manual_skipped: int = 0
    manual_failed: int = 0
    completed_at: datetime | None = None

    @property
    def change_count(self) -> int:
        return self.creates + self.deletes

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "external_device_count": self.external_device_count,
            "pages": self.pages,
            "hub_device_count": self.hub_device_count,
            "creates": self.creates,
            "deletes": self.deletes,
            "apply_mode": self.apply_mode.value,
            "import_job_id": self.import_job_id,
            "manual_changed": self.manual_changed,
            "manual_skipped": self.manual_skipped,
            "manual_failed": self.manual_failed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


__all__ = [
    "DeviceStatus",
    "ChangeKind",
    "DeviceRecord",
    "ExternalDevicePage",
    "HubDevicePage",
    "JobKind",
    "JobStatus",
    "SyncJob",
    "PageCursor",
    "PageTransferResult",
    "DeviceDiff",
    "DeviceSyncState",
    "FailureReason",
    "DeviceWorkflowResult",
    "ManualBatchResult",
    "ApplyMode",
    "ReconciliationResult",
    # Re-exported from api.resilience
    "OperationResult",
    "OutcomeKind",
    "RetryOutcome",
    "RetryPolicy",
]
