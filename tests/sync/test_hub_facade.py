"""Tests for HubDeviceFacade."""

import pytest

from src.hubsync.api.exceptions import ConfigurationError, NotFoundError, ValidationError
from src.hubsync.api.resilience import OutcomeKind
from src.hubsync.sync.domain.entities import DeviceStatus
from src.hubsync.sync.use_cases.hub_facade import SOFT_DELETE_REASON, HubDeviceFacade


class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_enabled_device_with_tags(self, hub):
        result = await HubDeviceFacade(hub).create_device("d1", {"EUI": "1234567890ABCDEF"})

        assert result.outcome == OutcomeKind.SUCCESS
        assert hub.devices["d1"].status == DeviceStatus.ENABLED
        assert hub.devices["d1"].tags == {"EUI": "1234567890ABCDEF"}

    @pytest.mark.asyncio
    async def test_existing_device_is_noop(self, hub):
        hub.add_devices("d1")

        result = await HubDeviceFacade(hub).create_device("d1")

        assert result.outcome == OutcomeKind.NOOP

    @pytest.mark.asyncio
    async def test_empty_id_is_rejected(self, hub):
        with pytest.raises(ValidationError):
            await HubDeviceFacade(hub).create_device("")

    @pytest.mark.asyncio
    async def test_disabled_facade(self, hub):
        with pytest.raises(ConfigurationError):
            await HubDeviceFacade(hub, enabled=False).create_device("d1")
        assert hub.created == []


class TestDelete:

    @pytest.mark.asyncio
    async def test_hard_delete_removes_device(self, hub):
        hub.add_devices("d1")

        await HubDeviceFacade(hub).delete_device("d1")

        assert "d1" not in hub.devices

    @pytest.mark.asyncio
    async def test_hard_delete_of_missing_device(self, hub):
        with pytest.raises(NotFoundError):
            await HubDeviceFacade(hub).delete_device("ghost")

    @pytest.mark.asyncio
    async def test_soft_delete_disables_and_keeps_tags(self, hub):
        hub.add_devices("d1")

        await HubDeviceFacade(hub, soft_delete=True).delete_device("d1")

        updated = hub.updated[0]
        assert updated.status == DeviceStatus.DISABLED
        assert updated.status_reason == SOFT_DELETE_REASON
        assert updated.tags == {"ref": "ref-d1"}
        assert hub.deleted == []

    @pytest.mark.asyncio
    async def test_soft_delete_of_missing_device(self, hub):
        with pytest.raises(NotFoundError):
            await HubDeviceFacade(hub, soft_delete=True).delete_device("ghost")
        assert hub.updated == []
