"""Hub registry adapter over the hub's REST API.

This adapter implements IHubRegistry with RegistryHttpClient. Bulk jobs
read and write the staging container through the signed URL handed to
them; device lines use the DeviceRecord wire format.

Endpoints:
    GET    /devices?pageIndex=&pageSize=     -> {"devices": [...], "hasMore": bool}
    GET    /devices/{id}                     -> device
    GET    /devices/{id}/twin                -> {"tags": {...}}
    POST   /devices                          -> device (409 if it exists)
    PUT    /devices/{id}                     -> device
    DELETE /devices/{id}                     (404 if absent)
    POST   /jobs                             -> job
    GET    /jobs/{jobId}                     -> job
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

from ...api.client import RegistryHttpClient
from ...api.exceptions import (
    APIError,
    ConflictError,
    JobQuotaExceededError,
    NotFoundError,
    RateLimitError,
)
from ...api.resilience import OperationResult
from ..domain.entities import DeviceRecord, HubDevicePage, JobKind, JobStatus, SyncJob
from ..domain.ports import IHubRegistry

logger = logging.getLogger(__name__)

# Hub job states, mapped onto the states the poller understands
JOB_STATUS_MAP = {
    "enqueued": JobStatus.PENDING,
    "queued": JobStatus.PENDING,
    "scheduled": JobStatus.PENDING,
    "pending": JobStatus.PENDING,
    "running": JobStatus.RUNNING,
    "completed": JobStatus.SUCCEEDED,
    "succeeded": JobStatus.SUCCEEDED,
    "failed": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELLED,
    "canceled": JobStatus.CANCELLED,
}


def map_job_status(raw: Optional[str]) -> JobStatus:
    return JOB_STATUS_MAP.get((raw or "").lower(), JobStatus.UNKNOWN)


def _is_quota_error(error: APIError) -> bool:
    if isinstance(error, RateLimitError):
        return True
    body = (error.response_body or "").lower()
    return "jobquotaexceeded" in body or "job quota" in body


class HubApiRegistry(IHubRegistry):
    """Hub registry backed by the hub REST API.

    The client must already be open (used inside its async context).
    """

    DEVICES_ENDPOINT = "/devices"
    JOBS_ENDPOINT = "/jobs"

    def __init__(self, client: RegistryHttpClient):
        self.client = client

    def _device_endpoint(self, device_id: str) -> str:
        return f"{self.DEVICES_ENDPOINT}/{quote(device_id, safe='')}"

    # ----------------------------------------
    # Listing and lookups
    # ----------------------------------------

    async def list_devices(self, page_index: int, page_size: int = 1000) -> HubDevicePage:
        body = await self.client.get(
            self.DEVICES_ENDPOINT,
            params={"pageIndex": page_index, "pageSize": page_size},
        ) or {}
        records = [DeviceRecord.from_dict(item) for item in body.get("devices", [])]
        return HubDevicePage(records=records, has_more=bool(body.get("hasMore", False)))

    async def get_device(self, device_id: str) -> DeviceRecord | None:
        try:
            body = await self.client.get(self._device_endpoint(device_id))
        except NotFoundError:
            return None
        return DeviceRecord.from_dict(body)

    async def get_device_tags(self, device_id: str) -> dict[str, str] | None:
        try:
            body = await self.client.get(f"{self._device_endpoint(device_id)}/twin")
        except NotFoundError:
            return None
        if not body or body.get("tags") is None:
            return None
        return {str(k): str(v) for k, v in body["tags"].items() if v is not None}

    # ----------------------------------------
    # Bulk jobs
    # ----------------------------------------

    @staticmethod
    def _parse_job(body: dict[str, Any], kind: JobKind) -> SyncJob:
        raw_kind = str(body.get("type") or kind.value).lower()
        return SyncJob(
            job_id=str(body["jobId"]),
            kind=JobKind.IMPORT if "import" in raw_kind else JobKind.EXPORT,
            status=map_job_status(body.get("status")),
            failure_reason=body.get("failureReason"),
        )

    async def _submit_job(self, payload: dict[str, Any], kind: JobKind) -> SyncJob:
        try:
            body = await self.client.post(self.JOBS_ENDPOINT, json_body=payload)
        except APIError as e:
            if _is_quota_error(e):
                raise JobQuotaExceededError(
                    f"Hub refused {kind.value} job: quota exceeded",
                    cause=e,
                ) from e
            raise
        job = self._parse_job(body, kind)
        logger.info(f"Hub accepted {kind.value} job {job.job_id} ({job.status.value})")
        return job

    async def submit_export_job(self, output_url: str, exclude_keys: bool = False) -> SyncJob:
        return await self._submit_job(
            {
                "type": "export",
                "outputBlobContainerUri": output_url,
                "excludeKeysInExport": exclude_keys,
            },
            JobKind.EXPORT,
        )

    async def submit_import_job(
        self,
        input_url: str,
        output_url: str,
        input_blob_name: str,
    ) -> SyncJob:
        return await self._submit_job(
            {
                "type": "import",
                "inputBlobContainerUri": input_url,
                "outputBlobContainerUri": output_url,
                "inputBlobName": input_blob_name,
            },
            JobKind.IMPORT,
        )

    async def get_job(self, job_id: str) -> SyncJob:
        body = await self.client.get(f"{self.JOBS_ENDPOINT}/{quote(job_id, safe='')}")
        return self._parse_job(body, JobKind.EXPORT)

    # ----------------------------------------
    # Device writes
    # ----------------------------------------

    async def create_device(self, device: DeviceRecord) -> OperationResult:
        try:
            body = await self.client.post(self.DEVICES_ENDPOINT, json_body=device.to_dict())
        except ConflictError:
            return OperationResult.noop(f"Device {device.id} already exists in hub")
        except Exception as e:
            return OperationResult.from_exception(e)
        return OperationResult.success(body)

    async def delete_device(self, device_id: str) -> OperationResult:
        try:
            await self.client.delete(self._device_endpoint(device_id))
        except NotFoundError:
            return OperationResult.noop(f"Device {device_id} not found in hub")
        except Exception as e:
            return OperationResult.from_exception(e)
        return OperationResult.success()

    async def update_device(self, device: DeviceRecord) -> OperationResult:
        try:
            body = await self.client.put(self._device_endpoint(device.id), json_body=device.to_dict())
        except NotFoundError:
            return OperationResult.permanent(
                f"Device {device.id} not found in hub",
                error_type="NotFoundError",
            )
        except Exception as e:
            return OperationResult.from_exception(e)
        return OperationResult.success(body)


__all__ = ["HubApiRegistry", "JOB_STATUS_MAP", "map_job_status"]
