"""Device Event Use Case - routes hub lifecycle events to the external registry.

For every event in a batch:

- devicecreated: when the event twin already carries every property the
  external registry requires and they validate, try one direct external
  create. If the properties are incomplete, invalid, or the direct call
  does not succeed, start a create workflow that waits for readiness and
  retries.
- devicedeleted: try one direct external delete; if it does not succeed,
  start a delete workflow that retries.

Other operation types are ignored.
"""

import logging

from ...api.exceptions import PermanentValidationError
from ..domain.entities import DeviceRecord
from ..domain.ports import IExternalRegistry
from ..schemas import DEVICE_CREATED, DEVICE_DELETED, DeviceLifecycleEvent
from ..workflow.durable import DirectRunner, WorkflowRuntime
from .device_sync import DeviceDeleteOrchestrator, DeviceSyncOrchestrator

logger = logging.getLogger(__name__)


class DeviceEventDispatcher:
    """Handles batches of hub lifecycle events.

    Example:
        dispatcher = DeviceEventDispatcher(runtime, registry)
        started = await dispatcher.dispatch(parse_events(body))
    """

    def __init__(
        self,
        runtime: WorkflowRuntime,
        external_registry: IExternalRegistry,
        direct_runner: DirectRunner | None = None,
    ):
        self.runtime = runtime
        self.external = external_registry
        self.direct = direct_runner or DirectRunner()

    async def dispatch(self, events: list[DeviceLifecycleEvent]) -> list[str]:
        """Handle a batch of events.

        Returns:
            Instance ids of the workflows started for the batch.
        """
        started: list[str] = []
        for event in events:
            operation = event.data.operation
            if operation == DEVICE_CREATED:
                instance_id = await self._on_created(event)
            elif operation == DEVICE_DELETED:
                instance_id = await self._on_deleted(event)
            else:
                logger.debug(f"Ignoring {operation} event for {event.data.device_id}")
                continue

            if instance_id:
                started.append(instance_id)

        logger.info(f"Dispatched {len(events)} device events, started {len(started)} workflows")
        return started

    async def _on_created(self, event: DeviceLifecycleEvent) -> str | None:
        device_id = event.data.device_id
        properties = event.required_tags(self.external.required_properties())

        if properties:
            try:
                self.external.validate_properties(properties)
                result = await self.direct.call_operation(
                    "external.create", self.external.create_device, device_id, properties
                )
                if result.succeeded:
                    logger.info(f"Device {device_id} created directly in {self.external.name}")
                    return None
                reason = result.message
            except PermanentValidationError as e:
                reason = e.message

            logger.warning(
                f"Direct creation of device {device_id} from hub {event.data.hub_name} failed, "
                f"starting a workflow: {reason}"
            )

        return await self.runtime.start_new(DeviceSyncOrchestrator.NAME, {"device_id": device_id})

    async def _on_deleted(self, event: DeviceLifecycleEvent) -> str | None:
        device = DeviceRecord(id=event.data.device_id, tags=event.data.tags)

        result = await self.direct.call_operation(
            "external.delete", self.external.delete_device, device
        )
        if result.succeeded:
            logger.info(f"Device {device.id} deleted directly from {self.external.name}")
            return None

        logger.warning(
            f"Direct delete of device {device.id} from hub {event.data.hub_name} failed, "
            f"starting a workflow: {result.message}"
        )
        return await self.runtime.start_new(DeviceDeleteOrchestrator.NAME, {"device": device.to_dict()})


__all__ = ["DeviceEventDispatcher"]
