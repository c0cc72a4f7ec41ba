"""Tests for the per-device create and delete workflows."""

from unittest.mock import AsyncMock

import pytest

from src.hubsync.api.exceptions import APIError, InvalidCredentialsError
from src.hubsync.api.resilience import OperationResult, RetryPolicy
from src.hubsync.sync.domain.entities import (
    DeviceRecord,
    DeviceSyncState,
    DeviceWorkflowResult,
    FailureReason,
)
from src.hubsync.sync.use_cases.device_sync import (
    DeviceDeleteOrchestrator,
    DeviceSyncOrchestrator,
)

READINESS = RetryPolicy(initial_interval=30, backoff_coefficient=2.0, max_interval=300, max_attempts=100)
EXTERNAL_CALLS = RetryPolicy(initial_interval=10, backoff_coefficient=2.0, max_interval=60, max_attempts=4)
VALID_TAGS = {"EUI": "1234567890ABCDEF", "applicationKey": "key", "other": "x"}


@pytest.fixture
def create_runtime(runtime, hub, external):
    orchestrator = DeviceSyncOrchestrator(hub, external, READINESS, EXTERNAL_CALLS)
    runtime.register(DeviceSyncOrchestrator.NAME, orchestrator.run)
    return runtime


@pytest.fixture
def delete_runtime(runtime, external):
    orchestrator = DeviceDeleteOrchestrator(external, EXTERNAL_CALLS)
    runtime.register(DeviceDeleteOrchestrator.NAME, orchestrator.run)
    return runtime


async def run_create(runtime, device_id="dev-1") -> DeviceWorkflowResult:
    outcome = await runtime.run(DeviceSyncOrchestrator.NAME, {"device_id": device_id})
    assert outcome.succeeded
    return DeviceWorkflowResult.from_dict(outcome.output)


async def run_delete(runtime, device_id="dev-1") -> DeviceWorkflowResult:
    device = DeviceRecord(id=device_id, tags={"EUI": "1234567890ABCDEF"})
    outcome = await runtime.run(DeviceDeleteOrchestrator.NAME, {"device": device.to_dict()})
    assert outcome.succeeded
    return DeviceWorkflowResult.from_dict(outcome.output)


class TestCreateWorkflow:

    @pytest.mark.asyncio
    async def test_ready_device_is_created(self, create_runtime, hub, external, clock):
        hub.twins["dev-1"] = VALID_TAGS

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED
        assert result.properties == {"EUI": "1234567890ABCDEF", "applicationKey": "key"}
        assert external.created == [("dev-1", result.properties)]
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_for_twin_properties(self, create_runtime, hub, external, clock):
        hub.get_device_tags = AsyncMock(side_effect=[
            None,
            {"EUI": "1234567890ABCDEF"},
            VALID_TAGS,
        ])

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED
        assert clock.sleeps == [30, 60]
        assert result.attempts == 4

    @pytest.mark.asyncio
    async def test_readiness_timeout(self, create_runtime, external, clock):
        result = await run_create(create_runtime, "never-ready")

        assert result.state == DeviceSyncState.FAILED
        assert result.failure_reason == FailureReason.READINESS_TIMEOUT
        assert result.attempts == 100
        assert len(clock.sleeps) == 99
        assert max(clock.sleeps) == 300
        assert external.created == []
        assert "not ready after 100 checks" in result.message
        assert "Twin of device never-ready" in result.message

    @pytest.mark.asyncio
    async def test_rejected_hub_credentials_are_not_a_timeout(self, create_runtime, hub, external, clock):
        hub.get_device_tags = AsyncMock(side_effect=InvalidCredentialsError())

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.FAILED
        assert result.failure_reason == FailureReason.READINESS_FAILED
        assert result.attempts == 1
        assert clock.sleeps == []
        assert external.created == []

    @pytest.mark.asyncio
    async def test_invalid_properties_fail_without_create(self, create_runtime, hub, external, clock):
        hub.twins["dev-1"] = {"EUI": "123", "applicationKey": "key"}

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.FAILED
        assert result.failure_reason == FailureReason.VALIDATION_FAILED
        assert "EUI" in result.message
        assert external.created == []
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_already_existing_device_counts_as_success(self, create_runtime, hub, external):
        hub.twins["dev-1"] = VALID_TAGS
        external.create_results["dev-1"] = [OperationResult.noop("Device already exists")]

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED
        assert result.message == "Device already exists"

    @pytest.mark.asyncio
    async def test_transient_create_errors_are_retried(self, create_runtime, hub, external, clock):
        hub.twins["dev-1"] = VALID_TAGS
        external.create_results["dev-1"] = [
            OperationResult.transient("503"),
            OperationResult.transient("503"),
        ]

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED
        assert len(external.created) == 3
        assert clock.sleeps == [10, 20]

    @pytest.mark.asyncio
    async def test_permanent_create_error_fails(self, create_runtime, hub, external):
        hub.twins["dev-1"] = VALID_TAGS
        external.create_results["dev-1"] = [OperationResult.permanent("400 bad request")]

        result = await run_create(create_runtime)

        assert result.state == DeviceSyncState.FAILED
        assert result.failure_reason == FailureReason.CREATION_FAILED
        assert len(external.created) == 1

    @pytest.mark.asyncio
    async def test_create_gives_up_after_policy(self, create_runtime, hub, external):
        hub.twins["dev-1"] = VALID_TAGS
        external.create_results["dev-1"] = [OperationResult.transient("down")] * 10

        result = await run_create(create_runtime)

        assert result.failure_reason == FailureReason.CREATION_FAILED
        assert len(external.created) == EXTERNAL_CALLS.max_attempts


class TestDeleteWorkflow:

    @pytest.mark.asyncio
    async def test_delete_succeeds(self, delete_runtime, external):
        result = await run_delete(delete_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED
        assert external.deleted == ["dev-1"]

    @pytest.mark.asyncio
    async def test_missing_device_counts_as_success(self, delete_runtime, external):
        external.delete_results["dev-1"] = [OperationResult.noop("Device not found")]

        result = await run_delete(delete_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_other_errors_retry_then_fail_this_device(self, delete_runtime, external, clock):
        external.delete_results["dev-1"] = [OperationResult.transient("timeout")] * 10

        result = await run_delete(delete_runtime)

        assert result.state == DeviceSyncState.FAILED
        assert result.failure_reason == FailureReason.DELETION_FAILED
        assert result.attempts == 4
        assert clock.sleeps == [10, 20, 40]

    @pytest.mark.asyncio
    async def test_permanent_errors_are_retried_to_the_limit(self, delete_runtime, external, clock):
        external.delete_results["dev-1"] = [OperationResult.permanent("ambiguous device")] * 10

        result = await run_delete(delete_runtime)

        assert result.failure_reason == FailureReason.DELETION_FAILED
        assert result.attempts == EXTERNAL_CALLS.max_attempts
        assert len(external.deleted) == EXTERNAL_CALLS.max_attempts
        assert result.message == "ambiguous device"
        assert clock.sleeps == [10, 20, 40]

    @pytest.mark.asyncio
    async def test_forbidden_delete_is_retried(self, delete_runtime, external):
        external.delete_device = AsyncMock(side_effect=APIError("Forbidden", status_code=403))

        result = await run_delete(delete_runtime)

        assert result.state == DeviceSyncState.FAILED
        assert result.attempts == EXTERNAL_CALLS.max_attempts
        assert external.delete_device.await_count == EXTERNAL_CALLS.max_attempts

    @pytest.mark.asyncio
    async def test_permanent_failure_then_success(self, delete_runtime, external):
        external.delete_results["dev-1"] = [OperationResult.permanent("ambiguous device")]

        result = await run_delete(delete_runtime)

        assert result.state == DeviceSyncState.SUCCEEDED
        assert result.attempts == 2
