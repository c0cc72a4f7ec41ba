"""Hub Device Facade Use Case - create and delete hub devices on request.

Lets the external system (or an operator) manage hub devices directly.
Deletion is either a removal or, with soft delete enabled, a disable with
status reason "Deleted by external system" so the device and its twin
are kept.
"""

import logging

from ...api.exceptions import ConfigurationError, NotFoundError, ValidationError
from ...api.resilience import OperationResult, OutcomeKind
from ..domain.entities import DeviceRecord, DeviceStatus
from ..domain.ports import IHubRegistry

logger = logging.getLogger(__name__)

SOFT_DELETE_REASON = "Deleted by external system"


class HubDeviceFacade:
    """Create/delete operations against the hub registry.

    Example:
        facade = HubDeviceFacade(hub, enabled=True, soft_delete=True)
        await facade.create_device("d1", {"EUI": "0011223344556677"})
        await facade.delete_device("d1")
    """

    def __init__(self, hub: IHubRegistry, enabled: bool = True, soft_delete: bool = False):
        self.hub = hub
        self.enabled = enabled
        self.soft_delete = soft_delete

    def _ensure_enabled(self) -> None:
        if not self.enabled:
            raise ConfigurationError("Hub device facade is disabled")

    async def create_device(self, device_id: str, tags: dict[str, str] | None = None) -> OperationResult:
        """Create an enabled hub device with optional twin tags.

        Raises:
            ConfigurationError: If the facade is disabled.
            ValidationError: If ``device_id`` is empty.
        """
        self._ensure_enabled()
        if not device_id:
            raise ValidationError("Missing deviceId value", field="device_id")

        device = DeviceRecord(id=device_id, tags=dict(tags or {}), status=DeviceStatus.ENABLED)
        result = await self.hub.create_device(device)
        logger.info(f"Facade create of hub device {device_id}: {result.outcome.value}")
        return result

    async def delete_device(self, device_id: str) -> OperationResult:
        """Remove or disable a hub device.

        Raises:
            ConfigurationError: If the facade is disabled.
            ValidationError: If ``device_id`` is empty.
            NotFoundError: If the device does not exist.
        """
        self._ensure_enabled()
        if not device_id:
            raise ValidationError("Missing deviceId value", field="device_id")

        if self.soft_delete:
            device = await self.hub.get_device(device_id)
            if device is None:
                raise NotFoundError("Device", device_id)
            disabled = DeviceRecord(
                id=device.id,
                tags=device.tags,
                status=DeviceStatus.DISABLED,
                status_reason=SOFT_DELETE_REASON,
                etag=device.etag,
            )
            result = await self.hub.update_device(disabled)
        else:
            result = await self.hub.delete_device(device_id)
            if result.outcome == OutcomeKind.NOOP:
                raise NotFoundError("Device", device_id)

        logger.info(
            f"Facade delete of hub device {device_id} (soft={self.soft_delete}): {result.outcome.value}"
        )
        return result


__all__ = ["HubDeviceFacade", "SOFT_DELETE_REASON"]
