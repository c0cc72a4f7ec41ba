"""Port interfaces for registry synchronization.

Ports define the contracts between the use cases and the infrastructure.
These are abstract base classes that adapters must implement.

Following the Hexagonal Architecture (Ports and Adapters) pattern:
- Ports are interfaces defined in the domain layer
- Adapters implement these ports in the adapters layer
- Use cases depend only on ports, not concrete implementations

Write operations against a registry return an OperationResult instead of
raising, so the caller's retry policy can tell an idempotent no-op from a
transient or permanent failure without inspecting exception types.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from .entities import (
    DeviceRecord,
    ExternalDevicePage,
    HubDevicePage,
    OperationResult,
    SyncJob,
)


class IExternalRegistry(ABC):
    """Port for a network-operator device registry.

    Each external system (one vendor API) provides one implementation,
    registered by name in the adapters' registry table.
    """

    name: str = "external"

    @abstractmethod
    async def list_page(self, page_index: int) -> ExternalDevicePage:
        """Fetch one page of external devices.

        Args:
            page_index: Zero-based page index.

        Returns:
            The page; ``has_more`` is False once the listing is exhausted.
        """
        ...

    @abstractmethod
    async def create_device(
        self,
        device_id: str,
        properties: dict[str, str],
    ) -> OperationResult:
        """Create a device in the external registry.

        "Already exists" must be reported as a no-op, not a failure.
        """
        ...

    @abstractmethod
    async def delete_device(self, device: DeviceRecord) -> OperationResult:
        """Delete the external counterpart of a hub device.

        "Not found" must be reported as a no-op, not a failure.

        Args:
            device: The hub device, with the tags the registry needs to
                locate its counterpart.
        """
        ...

    @abstractmethod
    def extract_device_id(self, record: dict[str, Any]) -> str:
        """Return the hub device id carried by an external record."""
        ...

    @abstractmethod
    def required_properties(self) -> list[str]:
        """Hub tag names that must exist before an external create."""
        ...

    @abstractmethod
    def validate_properties(self, properties: dict[str, str]) -> None:
        """Check properties before an external create.

        Raises:
            PermanentValidationError: If the properties can never be accepted.
        """
        ...

    @abstractmethod
    def to_hub_device(self, record: dict[str, Any]) -> DeviceRecord:
        """Build the hub device that mirrors an external record."""
        ...


class IHubRegistry(ABC):
    """Port for the primary hub device registry."""

    @abstractmethod
    async def list_devices(self, page_index: int, page_size: int = 1000) -> HubDevicePage:
        """Fetch one page of hub devices (zero-based page index)."""
        ...

    @abstractmethod
    async def submit_export_job(self, output_url: str, exclude_keys: bool = False) -> SyncJob:
        """Start a bulk export of all hub devices into a staging container.

        Raises:
            JobQuotaExceededError: If the hub has too many jobs running.
        """
        ...

    @abstractmethod
    async def submit_import_job(
        self,
        input_url: str,
        output_url: str,
        input_blob_name: str,
    ) -> SyncJob:
        """Start a bulk import of the change batch staged at ``input_url``.

        Raises:
            JobQuotaExceededError: If the hub has too many jobs running.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> SyncJob:
        """Fetch the current status of a bulk job."""
        ...

    @abstractmethod
    async def get_device(self, device_id: str) -> DeviceRecord | None:
        """Fetch one device, or None if it does not exist."""
        ...

    @abstractmethod
    async def get_device_tags(self, device_id: str) -> dict[str, str] | None:
        """Fetch the twin tags of a device, or None if the twin is absent."""
        ...

    @abstractmethod
    async def create_device(self, device: DeviceRecord) -> OperationResult:
        """Create a device (with its tags). "Already exists" is a no-op."""
        ...

    @abstractmethod
    async def delete_device(self, device_id: str) -> OperationResult:
        """Remove a device. "Not found" is a no-op."""
        ...

    @abstractmethod
    async def update_device(self, device: DeviceRecord) -> OperationResult:
        """Replace a device's status, status reason and tags."""
        ...


class IStagingStore(ABC):
    """Port for the intermediate blob store used by bulk transfers.

    Containers partition data per reconciliation run. Blobs hold JSON
    lines; ``write_blob`` overwrites so re-writing a page is idempotent.
    """

    @abstractmethod
    async def create_container(self, container: str) -> None:
        ...

    @abstractmethod
    async def write_blob(self, container: str, blob_name: str, lines: list[str]) -> None:
        """Write ``lines`` to a blob, replacing any existing content."""
        ...

    @abstractmethod
    async def append_blob(self, container: str, blob_name: str, lines: list[str]) -> None:
        ...

    @abstractmethod
    def read_lines(self, container: str, blob_name: str) -> AsyncIterator[str]:
        """Stream the non-empty lines of a blob."""
        ...

    @abstractmethod
    async def blob_exists(self, container: str, blob_name: str) -> bool:
        ...

    @abstractmethod
    async def list_blobs(self, container: str, prefix: str = "") -> list[str]:
        """Blob names in a container, sorted by name."""
        ...

    @abstractmethod
    async def generate_access_url(
        self,
        container: str,
        permissions: str,
        expires_in: int = 3600,
    ) -> str:
        """Return a signed, time-boxed URL granting access to a container."""
        ...

    @abstractmethod
    async def delete_container(self, container: str) -> bool:
        """Delete a container and its blobs. Returns False if it was absent."""
        ...


class IEffectLogStore(ABC):
    """Port for persisting workflow effect logs."""

    @abstractmethod
    async def append(self, instance_id: str, record: dict[str, Any]) -> None:
        """Append one effect record to an instance's log."""
        ...

    @abstractmethod
    async def load(self, instance_id: str) -> list[dict[str, Any]]:
        """Return an instance's effect records ordered by sequence."""
        ...

    @abstractmethod
    async def list_instances(self) -> list[str]:
        ...

    @abstractmethod
    async def delete(self, instance_id: str) -> None:
        ...


__all__ = [
    "IExternalRegistry",
    "IHubRegistry",
    "IStagingStore",
    "IEffectLogStore",
]
