"""Per-device Sync Use Cases - mirror hub device lifecycle into the external registry.

Create workflow (hub is the source of truth):

    AWAITING_READINESS -> VERIFIED -> CREATING -> SUCCEEDED
           |                 |            |
           +-> FAILED        +-> FAILED   +-> FAILED
      (readiness_timeout) (validation_failed) (creation_failed)

1. AWAITING_READINESS: poll the hub twin until every property the external
   registry requires is present, under the readiness retry policy; an
   error that retrying cannot fix (rejected hub credentials) ends the
   workflow as readiness_failed
2. VERIFIED: validate the properties; a validation error is final
3. CREATING: create the external device under the external-call policy;
   "already exists" counts as success

Delete workflow: delete the external device under the external-call
policy; "not found" counts as success, any other error is retried to the
policy limits and then reported as deletion_failed for this device only.

Both run as durable orchestrations; every registry call is a recorded
effect, so a resumed instance continues where it stopped.
"""

import logging
from typing import Any

from ...api.exceptions import (
    NotFoundError,
    PermanentValidationError,
    ReadinessTimeoutError,
    TransientExternalError,
)
from ...api.resilience import OperationResult, OutcomeKind, RetryPolicy, retry_with_policy
from ..domain.entities import (
    DeviceRecord,
    DeviceSyncState,
    DeviceWorkflowResult,
    FailureReason,
)
from ..domain.ports import IExternalRegistry, IHubRegistry

logger = logging.getLogger(__name__)


class DeviceSyncOrchestrator:
    """Creates the external counterpart of a newly created hub device.

    Example:
        orchestrator = DeviceSyncOrchestrator(hub, external, readiness, create)
        runtime.register(DeviceSyncOrchestrator.NAME, orchestrator.run)
        await runtime.start_new(DeviceSyncOrchestrator.NAME, {"device_id": "d1"})
    """

    NAME = "device.create"

    def __init__(
        self,
        hub: IHubRegistry,
        external_registry: IExternalRegistry,
        readiness_policy: RetryPolicy,
        create_policy: RetryPolicy,
    ):
        """Initialize the orchestrator.

        Args:
            hub: Port for reading device twins from the hub
            external_registry: Port for the external registry
            readiness_policy: Retry policy while waiting for twin properties
            create_policy: Retry policy for the external create call
        """
        self.hub = hub
        self.external = external_registry
        self.readiness_policy = readiness_policy
        self.create_policy = create_policy

    async def check_readiness(self, device_id: str) -> OperationResult:
        """Activity: read the twin and collect the required properties.

        Raises:
            TransientExternalError: The twin or a required property is not
                there yet; the hub writes tags after the device exists.
        """
        try:
            tags = await self.hub.get_device_tags(device_id)
        except NotFoundError:
            tags = None

        if tags is None:
            raise TransientExternalError(
                f"Twin of device {device_id} not available yet", details={"device_id": device_id}
            )

        required = self.external.required_properties()
        missing = [name for name in required if name not in tags]
        if missing:
            logger.warning(f"Missing properties {missing} in device {device_id}")
            raise TransientExternalError(
                f"Missing property {missing[0]} in device {device_id}",
                details={"device_id": device_id, "missing": missing},
            )

        return OperationResult.success({name: tags[name] for name in required})

    async def create_external(self, device_id: str, properties: dict[str, str]) -> OperationResult:
        """Activity: one external create attempt."""
        result = await self.external.create_device(device_id, properties)
        if result.succeeded:
            logger.info(f"Device {device_id} created in {self.external.name} ({result.outcome.value})")
        return result

    async def run(self, ctx, input: dict[str, Any]) -> dict[str, Any]:
        """Orchestration body. Input: ``{"device_id": str}``."""
        device_id = input["device_id"]
        ctx.log(
            logging.INFO,
            f"Create workflow started for {device_id}: readiness every "
            f"{self.readiness_policy.initial_interval:.0f}s up to "
            f"{self.readiness_policy.max_attempts} checks",
        )

        # AWAITING_READINESS
        readiness = await retry_with_policy(
            ctx, "hub.check_readiness", self.check_readiness, self.readiness_policy, device_id
        )
        attempts = readiness.attempts
        if not readiness.succeeded:
            if readiness.exhausted:
                timeout = ReadinessTimeoutError(device_id, attempts)
                reason = FailureReason.READINESS_TIMEOUT
                message = f"{timeout.message}: {readiness.result.message}"
            else:
                reason = FailureReason.READINESS_FAILED
                message = readiness.result.message
            result = DeviceWorkflowResult(
                device_id=device_id,
                state=DeviceSyncState.FAILED,
                failure_reason=reason,
                attempts=attempts,
                message=message,
            )
            ctx.log(logging.ERROR, f"Device {device_id} not ready ({reason.value}): {message}")
            return result.to_dict()

        properties: dict[str, str] = readiness.result.value

        # VERIFIED
        try:
            self.external.validate_properties(properties)
        except PermanentValidationError as e:
            result = DeviceWorkflowResult(
                device_id=device_id,
                state=DeviceSyncState.FAILED,
                failure_reason=FailureReason.VALIDATION_FAILED,
                attempts=attempts,
                message=e.message,
                properties=properties,
            )
            ctx.log(logging.ERROR, f"Device {device_id} rejected: {e.message}")
            return result.to_dict()

        # CREATING
        creation = await retry_with_policy(
            ctx, "external.create", self.create_external, self.create_policy, device_id, properties
        )
        attempts += creation.attempts

        if creation.succeeded:
            result = DeviceWorkflowResult(
                device_id=device_id,
                state=DeviceSyncState.SUCCEEDED,
                attempts=attempts,
                message=creation.result.message,
                properties=properties,
            )
        else:
            result = DeviceWorkflowResult(
                device_id=device_id,
                state=DeviceSyncState.FAILED,
                failure_reason=FailureReason.CREATION_FAILED,
                attempts=attempts,
                message=creation.result.message,
                properties=properties,
            )

        ctx.log(
            logging.INFO if result.succeeded else logging.ERROR,
            f"Create workflow finished for {device_id}: {result.state.value}",
        )
        return result.to_dict()


class DeviceDeleteOrchestrator:
    """Deletes the external counterpart of a removed hub device."""

    NAME = "device.delete"

    def __init__(self, external_registry: IExternalRegistry, delete_policy: RetryPolicy):
        self.external = external_registry
        self.delete_policy = delete_policy

    async def delete_external(self, device: DeviceRecord) -> OperationResult:
        """Activity: one external delete attempt.

        Only "not found" ends the delete early (as a noop); every failure,
        permanent ones included, is reported as transient so the policy
        keeps retrying it.
        """
        try:
            result = await self.external.delete_device(device)
        except Exception as e:
            result = OperationResult.from_exception(e)

        if result.succeeded:
            logger.info(f"Device {device.id} deleted from {self.external.name} ({result.outcome.value})")
        elif result.outcome == OutcomeKind.PERMANENT:
            logger.warning(f"Delete of device {device.id} failed ({result.message}); will retry")
            result = OperationResult.transient(result.message, error_type=result.error_type, value=result.value)
        return result

    async def run(self, ctx, input: dict[str, Any]) -> dict[str, Any]:
        """Orchestration body. Input: ``{"device": DeviceRecord dict}``."""
        device = DeviceRecord.from_dict(input["device"])
        ctx.log(logging.INFO, f"Delete workflow started for {device.id}")

        outcome = await retry_with_policy(
            ctx, "external.delete", self.delete_external, self.delete_policy, device
        )

        if outcome.succeeded:
            result = DeviceWorkflowResult(
                device_id=device.id,
                state=DeviceSyncState.SUCCEEDED,
                attempts=outcome.attempts,
                message=outcome.result.message,
            )
        else:
            result = DeviceWorkflowResult(
                device_id=device.id,
                state=DeviceSyncState.FAILED,
                failure_reason=FailureReason.DELETION_FAILED,
                attempts=outcome.attempts,
                message=outcome.result.message,
            )

        ctx.log(
            logging.INFO if result.succeeded else logging.ERROR,
            f"Delete workflow finished for {device.id}: {result.state.value}",
        )
        return result.to_dict()


__all__ = ["DeviceSyncOrchestrator", "DeviceDeleteOrchestrator"]
