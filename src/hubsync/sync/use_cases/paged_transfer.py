"""Paged Bulk Transfer Use Case - moves external device pages into staging.

Workflow for one ``retrieve`` call:
1. Fetch external page ``start_page`` (via IExternalRegistry)
2. Write it to the run's staging container as its own blob
3. Repeat with the next page until the registry reports no more pages,
   or the wall-clock budget is spent (checked between pages)
4. Return how far it got, so the caller can call again from there

Each page is written to ``external-devices/page-{index:06d}.jsonl`` with
overwrite semantics; fetching the same page index twice leaves the same
blob behind. The transfer never retries: a fetch or write error
propagates and the caller decides whether the run survives it.

The same module owns the other staging blobs of a run: the hub export
(``devices.txt``) and the import batch (``devices-to-import.txt``).
"""

import json
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any, AsyncIterator

from ..domain.entities import DeviceRecord, PageCursor, PageTransferResult
from ..domain.ports import IExternalRegistry, IStagingStore

logger = logging.getLogger(__name__)

PAGE_BLOB_PREFIX = "external-devices/"
EXPORT_BLOB_NAME = "devices.txt"
IMPORT_BLOB_NAME = "devices-to-import.txt"
DEFAULT_PAGE_BUDGET_SECONDS = 180.0
IMPORT_WRITE_CHUNK = 100


def page_blob_name(page_index: int) -> str:
    return f"{PAGE_BLOB_PREFIX}page-{page_index:06d}.jsonl"


class PagedBulkTransfer:
    """Copies external registry pages into a run's staging container.

    Example:
        transfer = PagedBulkTransfer(registry, staging)
        result = await transfer.retrieve(run_id, start_page=0)
        while result.has_more:
            result = await transfer.retrieve(run_id, result.last_page_index)
    """

    def __init__(
        self,
        external_registry: IExternalRegistry,
        staging: IStagingStore,
        budget_seconds: float = DEFAULT_PAGE_BUDGET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the transfer with its dependencies.

        Args:
            external_registry: Port for listing external devices
            staging: Port for the staging blob store
            budget_seconds: Wall-clock budget for one retrieve call
            clock: Monotonic clock used for the budget
        """
        self.registry = external_registry
        self.staging = staging
        self.budget_seconds = budget_seconds
        self.clock = clock

    async def retrieve(self, run_id: str, start_page: int = 0) -> PageTransferResult:
        """Transfer pages starting at ``start_page`` within the budget.

        Returns:
            PageTransferResult; ``last_page_index`` is the next page to
            request when ``has_more`` is True.
        """
        started = self.clock()
        cursor = PageCursor(page_index=start_page)
        has_more = True

        while True:
            page = await self.registry.list_page(cursor.page_index)

            if page.records:
                await self.staging.write_blob(
                    run_id,
                    page_blob_name(cursor.page_index),
                    [json.dumps(record) for record in page.records],
                )
            logger.debug(f"Run {run_id}: page {cursor.page_index} had {len(page.records)} devices")
            cursor = cursor.advance(len(page.records))

            if not page.has_more or not page.records:
                has_more = False
                break

            if self.clock() - started >= self.budget_seconds:
                break

        logger.info(
            f"Run {run_id}: transferred {cursor.item_count} devices from pages "
            f"{start_page}..{cursor.page_index - 1}, more pages: {has_more}"
        )
        return PageTransferResult(
            items_processed=cursor.item_count,
            last_page_index=cursor.page_index,
            has_more=has_more,
        )

    async def iter_staged_records(self, run_id: str) -> AsyncIterator[dict[str, Any]]:
        """Stream staged external records back in page order."""
        for blob_name in await self.staging.list_blobs(run_id, prefix=PAGE_BLOB_PREFIX):
            async for line in self.staging.read_lines(run_id, blob_name):
                yield json.loads(line)

    async def iter_exported_devices(self, run_id: str) -> AsyncIterator[DeviceRecord]:
        """Stream the hub export blob of a run."""
        async for line in self.staging.read_lines(run_id, EXPORT_BLOB_NAME):
            yield DeviceRecord.from_dict(json.loads(line))

    async def write_changes(self, run_id: str, changes: Iterable[DeviceRecord]) -> int:
        """Write the import batch, replacing any earlier batch of this run.

        Returns:
            Number of devices written.
        """
        await self.staging.write_blob(run_id, IMPORT_BLOB_NAME, [])
        written = 0
        chunk: list[str] = []

        for device in changes:
            chunk.append(json.dumps(device.to_dict()))
            if len(chunk) >= IMPORT_WRITE_CHUNK:
                await self.staging.append_blob(run_id, IMPORT_BLOB_NAME, chunk)
                written += len(chunk)
                chunk = []

        if chunk:
            await self.staging.append_blob(run_id, IMPORT_BLOB_NAME, chunk)
            written += len(chunk)

        logger.info(f"Run {run_id}: staged {written} device changes")
        return written

    async def read_changes(self, run_id: str, start: int, count: int) -> list[DeviceRecord]:
        """Read ``count`` staged changes beginning at position ``start``."""
        changes: list[DeviceRecord] = []
        position = 0
        async for line in self.staging.read_lines(run_id, IMPORT_BLOB_NAME):
            if position >= start + count:
                break
            if position >= start:
                changes.append(DeviceRecord.from_dict(json.loads(line)))
            position += 1
        return changes


__all__ = [
    "PAGE_BLOB_PREFIX",
    "EXPORT_BLOB_NAME",
    "IMPORT_BLOB_NAME",
    "DEFAULT_PAGE_BUDGET_SECONDS",
    "PagedBulkTransfer",
    "page_blob_name",
]
