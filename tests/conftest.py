"""Shared fixtures: in-process fakes for the registry and staging ports.

The fakes implement the domain ports directly, so use cases and
workflows run end to end without network or database access.
"""

import json
from typing import Any

import pytest

from src.hubsync.api.exceptions import NotFoundError, PermanentValidationError
from src.hubsync.api.resilience import OperationResult
from src.hubsync.sync.adapters.effect_log import InMemoryEffectLogStore
from src.hubsync.sync.adapters.file_staging import FileStagingStore
from src.hubsync.sync.domain.entities import (
    ChangeKind,
    DeviceRecord,
    ExternalDevicePage,
    HubDevicePage,
    JobKind,
    JobStatus,
    SyncJob,
)
from src.hubsync.sync.domain.ports import IExternalRegistry, IHubRegistry
from src.hubsync.sync.use_cases.paged_transfer import EXPORT_BLOB_NAME
from src.hubsync.sync.workflow.durable import WorkflowRuntime


# ============================================
# Clock
# ============================================

class FakeClock:
    """Manually advanced clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================
# External registry
# ============================================

class FakeExternalRegistry(IExternalRegistry):
    """External registry holding pages of ``{"name", "EUI", "ref"}`` records.

    ``create_results`` / ``delete_results`` map a device id to the
    OperationResults returned by successive calls (success once exhausted).
    """

    name = "fake"

    def __init__(self):
        self.pages: list[list[dict[str, Any]]] = []
        self.page_errors: dict[int, Exception] = {}
        self.list_calls: list[int] = []
        self.create_results: dict[str, list[OperationResult]] = {}
        self.delete_results: dict[str, list[OperationResult]] = {}
        self.created: list[tuple[str, dict[str, str]]] = []
        self.deleted: list[str] = []

    def add_devices(self, *names: str, per_page: int = 2) -> None:
        records = [
            {"name": name, "EUI": f"{index:016X}", "ref": f"ref-{name}"}
            for index, name in enumerate(names, start=1)
        ]
        self.pages = [records[i:i + per_page] for i in range(0, len(records), per_page)]

    async def list_page(self, page_index: int) -> ExternalDevicePage:
        self.list_calls.append(page_index)
        if page_index in self.page_errors:
            raise self.page_errors[page_index]
        if page_index >= len(self.pages):
            return ExternalDevicePage(page_index=page_index, records=[], has_more=False)
        return ExternalDevicePage(page_index=page_index, records=list(self.pages[page_index]), has_more=True)

    async def create_device(self, device_id: str, properties: dict[str, str]) -> OperationResult:
        self.created.append((device_id, dict(properties)))
        scripted = self.create_results.get(device_id)
        if scripted:
            return scripted.pop(0)
        return OperationResult.success({"name": device_id})

    async def delete_device(self, device: DeviceRecord) -> OperationResult:
        self.deleted.append(device.id)
        scripted = self.delete_results.get(device.id)
        if scripted:
            return scripted.pop(0)
        return OperationResult.success()

    def extract_device_id(self, record: dict[str, Any]) -> str:
        return record["name"]

    def required_properties(self) -> list[str]:
        return ["EUI", "applicationKey"]

    def validate_properties(self, properties: dict[str, str]) -> None:
        if len(properties.get("EUI", "")) != 16:
            raise PermanentValidationError("Property EUI should have 16 characters", field="EUI")

    def to_hub_device(self, record: dict[str, Any]) -> DeviceRecord:
        return DeviceRecord(
            id=record["name"],
            tags={"EUI": record["EUI"], "ref": record["ref"]},
            change_kind=ChangeKind.CREATE,
        )


# ============================================
# Hub registry
# ============================================

class FakeHub(IHubRegistry):
    """Hub registry backed by a dict, with scripted bulk jobs.

    ``job_statuses`` maps a job id to the statuses returned by successive
    ``get_job`` calls; the last one repeats. An export job writes the
    current devices to the staging container when ``staging`` is set.
    """

    def __init__(self, staging=None):
        self.staging = staging
        self.devices: dict[str, DeviceRecord] = {}
        self.twins: dict[str, dict[str, str] | None] = {}
        self.job_statuses: dict[str, list[JobStatus]] = {}
        self.submitted: list[SyncJob] = []
        self.import_requests: list[tuple[str, str, str]] = []
        self.create_results: dict[str, OperationResult] = {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.updated: list[DeviceRecord] = []
        self.export_status = JobStatus.SUCCEEDED
        self.import_status = JobStatus.SUCCEEDED

    def add_devices(self, *device_ids: str) -> None:
        for device_id in device_ids:
            self.devices[device_id] = DeviceRecord(id=device_id, tags={"ref": f"ref-{device_id}"})

    async def list_devices(self, page_index: int, page_size: int = 1000) -> HubDevicePage:
        devices = list(self.devices.values())
        chunk = devices[page_index * page_size:(page_index + 1) * page_size]
        return HubDevicePage(records=chunk, has_more=(page_index + 1) * page_size < len(devices))

    async def submit_export_job(self, output_url: str, exclude_keys: bool = False) -> SyncJob:
        job = SyncJob(job_id=f"export-{len(self.submitted) + 1}", kind=JobKind.EXPORT)
        self.submitted.append(job)
        self.job_statuses.setdefault(job.job_id, [JobStatus.RUNNING, self.export_status])
        if self.staging is not None:
            container = output_url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
            await self.staging.write_blob(
                container,
                EXPORT_BLOB_NAME,
                [json.dumps(device.to_dict()) for device in self.devices.values()],
            )
        return job

    async def submit_import_job(self, input_url: str, output_url: str, input_blob_name: str) -> SyncJob:
        job = SyncJob(job_id=f"import-{len(self.submitted) + 1}", kind=JobKind.IMPORT)
        self.submitted.append(job)
        self.import_requests.append((input_url, output_url, input_blob_name))
        self.job_statuses.setdefault(job.job_id, [JobStatus.RUNNING, self.import_status])
        return job

    async def get_job(self, job_id: str) -> SyncJob:
        statuses = self.job_statuses[job_id]
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        kind = JobKind.IMPORT if job_id.startswith("import") else JobKind.EXPORT
        reason = "job failed" if status == JobStatus.FAILED else None
        return SyncJob(job_id=job_id, kind=kind, status=status, failure_reason=reason)

    async def get_device(self, device_id: str) -> DeviceRecord | None:
        return self.devices.get(device_id)

    async def get_device_tags(self, device_id: str) -> dict[str, str] | None:
        if device_id not in self.twins:
            raise NotFoundError("Device", device_id)
        return self.twins[device_id]

    async def create_device(self, device: DeviceRecord) -> OperationResult:
        self.created.append(device.id)
        if device.id in self.create_results:
            return self.create_results[device.id]
        if device.id in self.devices:
            return OperationResult.noop(f"Device {device.id} already exists")
        self.devices[device.id] = device
        return OperationResult.success()

    async def delete_device(self, device_id: str) -> OperationResult:
        self.deleted.append(device_id)
        if self.devices.pop(device_id, None) is None:
            return OperationResult.noop(f"Device {device_id} not found")
        return OperationResult.success()

    async def update_device(self, device: DeviceRecord) -> OperationResult:
        self.updated.append(device)
        self.devices[device.id] = device
        return OperationResult.success()


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def staging(tmp_path, clock):
    return FileStagingStore(tmp_path / "staging", signing_key="test-signing-key-0123456789abcdef", clock=clock)


@pytest.fixture
def external():
    return FakeExternalRegistry()


@pytest.fixture
def hub(staging):
    return FakeHub(staging=staging)


@pytest.fixture
def effect_store():
    return InMemoryEffectLogStore()


@pytest.fixture
def runtime(effect_store, clock):
    return WorkflowRuntime(effect_store, clock=clock, sleeper=clock.sleep)
