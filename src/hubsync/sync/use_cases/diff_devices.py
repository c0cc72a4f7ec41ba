"""Device Set Diff Use Case - computes creates and deletes between registries.

Given a source-of-truth device set and a destination device set, both
keyed by device id:

1. Index the destination by id (fully materialized)
2. Stream the source; every id found in the index is matched and removed
3. Unmatched source devices become creates
4. Whatever is left in the index becomes deletes, in destination order

Memory is bounded by the destination size plus the set of source ids
seen. Ids are compared case-sensitively, and a duplicate id on either
side is a fatal error: the diff would otherwise be ambiguous.
"""

import logging
from collections.abc import AsyncIterable, Iterable
from typing import AsyncIterator

from ...api.exceptions import DuplicateDeviceIdError
from ..domain.entities import ChangeKind, DeviceDiff, DeviceRecord

logger = logging.getLogger(__name__)

DeviceSource = Iterable[DeviceRecord] | AsyncIterable[DeviceRecord]


async def _iterate(items: DeviceSource) -> AsyncIterator[DeviceRecord]:
    if isinstance(items, AsyncIterable):
        async for item in items:
            yield item
    else:
        for item in items:
            yield item


class DeviceSetDiffer:
    """Computes the changes that bring a destination in line with a source.

    Example:
        diff = await DeviceSetDiffer().diff(external_devices, hub_devices)
        diff.creates  # in source only, change_kind=create
        diff.deletes  # in destination only, change_kind=delete
    """

    async def index_destination(self, destination: DeviceSource) -> dict[str, DeviceRecord]:
        index: dict[str, DeviceRecord] = {}
        async for device in _iterate(destination):
            if device.id in index:
                raise DuplicateDeviceIdError(device.id, side="destination")
            index[device.id] = device
        return index

    async def diff(self, source: DeviceSource, destination: DeviceSource) -> DeviceDiff:
        """Diff a source-of-truth set against a destination set.

        Args:
            source: Devices that should exist. May be lazy (sync or async).
            destination: Devices that currently exist.

        Returns:
            DeviceDiff with creates (source records) and deletes
            (destination records), each tagged with its change kind.

        Raises:
            DuplicateDeviceIdError: If an id repeats within either input.
        """
        remaining = await self.index_destination(destination)
        destination_size = len(remaining)
        seen: set[str] = set()
        creates: list[DeviceRecord] = []

        async for device in _iterate(source):
            if device.id in seen:
                raise DuplicateDeviceIdError(device.id, side="source")
            seen.add(device.id)

            if remaining.pop(device.id, None) is None:
                creates.append(device.with_change(ChangeKind.CREATE))

        deletes = [device.with_change(ChangeKind.DELETE) for device in remaining.values()]

        logger.info(
            f"Diffed {len(seen)} source against {destination_size} destination devices: "
            f"{len(creates)} to create, {len(deletes)} to delete"
        )
        return DeviceDiff(creates=creates, deletes=deletes)


__all__ = ["DeviceSetDiffer", "DeviceSource"]
