"""Tests for DeviceEventDispatcher and lifecycle event parsing."""

import json

import pydantic
import pytest

from src.hubsync.api.resilience import OperationResult, RetryPolicy
from src.hubsync.sync.domain.entities import DeviceWorkflowResult, DeviceSyncState
from src.hubsync.sync.schemas import parse_events
from src.hubsync.sync.use_cases.device_events import DeviceEventDispatcher
from src.hubsync.sync.use_cases.device_sync import (
    DeviceDeleteOrchestrator,
    DeviceSyncOrchestrator,
)
from src.hubsync.sync.workflow.durable import DirectRunner

POLICY = RetryPolicy(initial_interval=10, backoff_coefficient=2.0, max_interval=60, max_attempts=3)
GOOD_TAGS = {"EUI": "1234567890ABCDEF", "applicationKey": "key"}


def event(device_id: str, op_type: str, tags: dict | None = None) -> dict:
    data = {"deviceId": device_id, "hubName": "hub-1", "opType": op_type}
    if tags is not None:
        data["twin"] = {"tags": tags}
    return {"id": f"evt-{device_id}", "eventType": "DeviceLifecycle", "data": data}


@pytest.fixture
def dispatcher(runtime, hub, external, clock):
    runtime.register(
        DeviceSyncOrchestrator.NAME,
        DeviceSyncOrchestrator(hub, external, POLICY, POLICY).run,
    )
    runtime.register(
        DeviceDeleteOrchestrator.NAME,
        DeviceDeleteOrchestrator(external, POLICY).run,
    )
    return DeviceEventDispatcher(runtime, external, DirectRunner(clock, clock.sleep))


class TestParseEvents:

    def test_parses_json_text(self):
        events = parse_events(json.dumps([event("d1", "deviceCreated", {"EUI": 1})]))

        assert events[0].data.device_id == "d1"
        assert events[0].data.operation == "devicecreated"
        assert events[0].data.tags == {"EUI": "1"}

    def test_required_tags_all_or_nothing(self):
        parsed = parse_events([event("d1", "deviceCreated", {"EUI": "x"})])[0]

        assert parsed.required_tags(["EUI"]) == {"EUI": "x"}
        assert parsed.required_tags(["EUI", "applicationKey"]) == {}

    def test_rejects_event_without_device_id(self):
        with pytest.raises(pydantic.ValidationError):
            parse_events([{"data": {"opType": "deviceCreated"}}])


class TestCreatedEvents:

    @pytest.mark.asyncio
    async def test_complete_twin_creates_directly(self, dispatcher, external):
        started = await dispatcher.dispatch(parse_events([event("d1", "deviceCreated", GOOD_TAGS)]))

        assert started == []
        assert external.created == [("d1", GOOD_TAGS)]

    @pytest.mark.asyncio
    async def test_incomplete_twin_starts_workflow(self, dispatcher, runtime, hub, external):
        hub.twins["d1"] = GOOD_TAGS

        started = await dispatcher.dispatch(parse_events([event("d1", "deviceCreated", {"EUI": "x"})]))

        assert len(started) == 1
        outcome = await runtime.wait(started[0])
        result = DeviceWorkflowResult.from_dict(outcome.output)
        assert result.state == DeviceSyncState.SUCCEEDED
        assert external.created == [("d1", GOOD_TAGS)]

    @pytest.mark.asyncio
    async def test_invalid_twin_falls_back_to_workflow(self, dispatcher, runtime, external):
        bad = {"EUI": "123", "applicationKey": "key"}

        started = await dispatcher.dispatch(parse_events([event("d1", "deviceCreated", bad)]))

        assert len(started) == 1
        assert external.created == []
        await runtime.wait(started[0])

    @pytest.mark.asyncio
    async def test_failed_direct_create_falls_back_to_workflow(self, dispatcher, runtime, hub, external):
        hub.twins["d1"] = GOOD_TAGS
        external.create_results["d1"] = [OperationResult.transient("503")]

        started = await dispatcher.dispatch(parse_events([event("d1", "deviceCreated", GOOD_TAGS)]))

        assert len(started) == 1
        outcome = await runtime.wait(started[0])
        assert DeviceWorkflowResult.from_dict(outcome.output).succeeded
        assert len(external.created) == 2


class TestDeletedEvents:

    @pytest.mark.asyncio
    async def test_direct_delete(self, dispatcher, external):
        started = await dispatcher.dispatch(parse_events([event("d1", "deviceDeleted", GOOD_TAGS)]))

        assert started == []
        assert external.deleted == ["d1"]

    @pytest.mark.asyncio
    async def test_failed_direct_delete_starts_workflow(self, dispatcher, runtime, external):
        external.delete_results["d1"] = [OperationResult.transient("timeout")]

        started = await dispatcher.dispatch(parse_events([event("d1", "deviceDeleted", GOOD_TAGS)]))

        outcome = await runtime.wait(started[0])
        result = DeviceWorkflowResult.from_dict(outcome.output)
        assert result.succeeded
        assert external.deleted == ["d1", "d1"]


class TestBatches:

    @pytest.mark.asyncio
    async def test_mixed_batch_ignores_other_operations(self, dispatcher, external):
        events = parse_events([
            event("d1", "deviceCreated", GOOD_TAGS),
            event("d2", "twinChangeEvents", GOOD_TAGS),
            event("d3", "deviceDeleted"),
        ])

        started = await dispatcher.dispatch(events)

        assert started == []
        assert [device_id for device_id, _ in external.created] == ["d1"]
        assert external.deleted == ["d3"]
