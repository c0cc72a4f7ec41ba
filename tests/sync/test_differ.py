"""Tests for DeviceSetDiffer."""

import pytest

from src.hubsync.api.exceptions import DuplicateDeviceIdError
from src.hubsync.sync.domain.entities import ChangeKind, DeviceRecord
from src.hubsync.sync.use_cases.diff_devices import DeviceSetDiffer


def devices(*ids: str) -> list[DeviceRecord]:
    return [DeviceRecord(id=device_id) for device_id in ids]


async def stream(records):
    for record in records:
        yield record


class TestDeviceSetDiffer:

    @pytest.mark.asyncio
    async def test_creates_and_deletes(self):
        diff = await DeviceSetDiffer().diff(devices("A", "B", "C"), devices("B", "C", "D"))

        assert [d.id for d in diff.creates] == ["A"]
        assert [d.id for d in diff.deletes] == ["D"]
        assert all(d.change_kind == ChangeKind.CREATE for d in diff.creates)
        assert all(d.change_kind == ChangeKind.DELETE for d in diff.deletes)

    @pytest.mark.asyncio
    async def test_accepts_async_sources(self):
        diff = await DeviceSetDiffer().diff(stream(devices("A", "B")), stream(devices("B")))
        assert [d.id for d in diff.creates] == ["A"]
        assert diff.deletes == []

    @pytest.mark.asyncio
    async def test_identical_sets_produce_no_changes(self):
        diff = await DeviceSetDiffer().diff(devices("A", "B"), devices("B", "A"))
        assert diff.is_empty

    @pytest.mark.asyncio
    async def test_applying_the_diff_converges(self):
        source = devices("A", "B", "E")
        destination = devices("B", "C", "D")
        diff = await DeviceSetDiffer().diff(source, destination)

        remaining = {d.id for d in destination} - {d.id for d in diff.deletes}
        converged = remaining | {d.id for d in diff.creates}
        assert converged == {d.id for d in source}

        again = await DeviceSetDiffer().diff(source, [DeviceRecord(id=i) for i in sorted(converged)])
        assert again.is_empty

    @pytest.mark.asyncio
    async def test_ids_are_case_sensitive(self):
        diff = await DeviceSetDiffer().diff(devices("dev-a"), devices("DEV-A"))
        assert [d.id for d in diff.creates] == ["dev-a"]
        assert [d.id for d in diff.deletes] == ["DEV-A"]

    @pytest.mark.asyncio
    async def test_empty_source_deletes_everything(self):
        diff = await DeviceSetDiffer().diff([], devices("A", "B"))
        assert [d.id for d in diff.deletes] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_duplicate_in_source_is_fatal(self):
        with pytest.raises(DuplicateDeviceIdError) as exc:
            await DeviceSetDiffer().diff(devices("A", "A"), devices())
        assert exc.value.details["side"] == "source"

    @pytest.mark.asyncio
    async def test_duplicate_in_destination_is_fatal(self):
        with pytest.raises(DuplicateDeviceIdError) as exc:
            await DeviceSetDiffer().diff(devices("A"), devices("B", "B"))
        assert exc.value.details["side"] == "destination"
