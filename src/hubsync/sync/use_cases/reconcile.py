"""Reconciliation Use Case - brings the hub in line with the external registry.

This use case implements the bulk resync. The external registry is the
source of truth; the hub is changed to match it. It depends on ports for
all external operations and runs as a durable orchestration, one
recorded effect per step, with the run id (the workflow instance id)
naming the run's staging container.

Workflow:
1. Optionally start a hub export job into the staging container
2. Transfer external device pages into staging, in bounded calls, until
   the external listing is exhausted
3. Wait for the export job (if any) and require it to have succeeded
4. Diff the staged external devices against the hub devices and stage
   the resulting creates and deletes as an import batch
5. Apply the batch: a hub import job when the change count reaches the
   threshold (or the threshold is 0), otherwise device by device in
   batches, isolating per-device failures
6. Delete the staging container

A failure in steps 1-5 aborts the run with ReconciliationError before
anything further is applied. Per-device failures of the manual path are
counted and logged, not fatal.
"""

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from ...api.exceptions import ErrorCollector, HubSyncError, ReconciliationError
from ...api.resilience import OperationResult, OutcomeKind, RetryPolicy, process_concurrent
from ..domain.entities import (
    ApplyMode,
    ChangeKind,
    DeviceRecord,
    ManualBatchResult,
    PageTransferResult,
    ReconciliationResult,
    SyncJob,
)
from ..domain.ports import IExternalRegistry, IHubRegistry, IStagingStore
from .diff_devices import DeviceSetDiffer
from .job_poller import JobPoller
from .paged_transfer import IMPORT_BLOB_NAME, PagedBulkTransfer

logger = logging.getLogger(__name__)

EXPORT_URL_TTL_SECONDS = 24 * 3600
IMPORT_URL_TTL_SECONDS = 3600
HUB_LIST_PAGE_SIZE = 500


class ReconciliationOrchestrator:
    """Orchestrates one bulk reconciliation run.

    Example:
        orchestrator = ReconciliationOrchestrator(
            hub=hub, external_registry=registry, staging=staging,
            export_policy=settings.export_job_policy(),
            import_policy=settings.import_job_policy(),
        )
        runtime.register(ReconciliationOrchestrator.NAME, orchestrator.run)
        outcome = await runtime.run(ReconciliationOrchestrator.NAME)
    """

    NAME = "hub.reconcile"

    def __init__(
        self,
        hub: IHubRegistry,
        external_registry: IExternalRegistry,
        staging: IStagingStore,
        export_policy: RetryPolicy,
        import_policy: RetryPolicy,
        transfer: PagedBulkTransfer | None = None,
        poller: JobPoller | None = None,
        differ: DeviceSetDiffer | None = None,
        use_export_job: bool = True,
        change_job_threshold: int = 100,
        manual_batch_size: int = 100,
        import_initial_wait_seconds: float = 30.0,
        manual_concurrency: int = 10,
    ):
        """Initialize the orchestrator with its dependencies.

        Args:
            hub: Port for the hub registry
            external_registry: Port for the external registry
            staging: Port for the staging store
            export_policy: Polling policy for the export job
            import_policy: Polling policy for the import job
            transfer: Page transfer (built from registry and staging if None)
            poller: Job poller (built from hub if None)
            differ: Device set differ
            use_export_job: Read hub devices from an export job instead of
                listing them page by page
            change_job_threshold: Change count at which an import job is
                used; 0 always uses the import job
            manual_batch_size: Devices per manual import batch
            import_initial_wait_seconds: Wait before the first import poll
            manual_concurrency: Concurrent hub calls within a manual batch
        """
        self.hub = hub
        self.external = external_registry
        self.staging = staging
        self.export_policy = export_policy
        self.import_policy = import_policy
        self.transfer = transfer or PagedBulkTransfer(external_registry, staging)
        self.poller = poller or JobPoller(hub)
        self.differ = differ or DeviceSetDiffer()
        self.use_export_job = use_export_job
        self.change_job_threshold = change_job_threshold
        self.manual_batch_size = manual_batch_size
        self.import_initial_wait_seconds = import_initial_wait_seconds
        self.manual_concurrency = manual_concurrency

    # ----------------------------------------
    # Activities
    # ----------------------------------------

    async def prepare_staging(self, run_id: str) -> None:
        await self.staging.create_container(run_id)

    async def submit_export(self, run_id: str) -> dict[str, Any]:
        url = await self.staging.generate_access_url(run_id, "rwd", EXPORT_URL_TTL_SECONDS)
        job = await self.hub.submit_export_job(url, exclude_keys=True)
        logger.info(f"Started export job {job.job_id} for run {run_id}")
        return job.to_dict()

    async def retrieve_pages(self, run_id: str, start_page: int) -> dict[str, Any]:
        result = await self.transfer.retrieve(run_id, start_page)
        return result.to_dict()

    async def _iter_source_devices(self, run_id: str) -> AsyncIterator[DeviceRecord]:
        async for record in self.transfer.iter_staged_records(run_id):
            yield self.external.to_hub_device(record)

    async def _iter_hub_devices(self) -> AsyncIterator[DeviceRecord]:
        page_index = 0
        while True:
            page = await self.hub.list_devices(page_index, HUB_LIST_PAGE_SIZE)
            for device in page.records:
                yield device
            if not page.has_more:
                break
            page_index += 1

    async def build_change_set(self, run_id: str, from_export: bool) -> dict[str, Any]:
        """Diff staged external devices against the hub and stage the changes."""
        if from_export:
            destination = self.transfer.iter_exported_devices(run_id)
        else:
            destination = self._iter_hub_devices()

        hub_index = await self.differ.index_destination(destination)
        hub_count = len(hub_index)
        diff = await self.differ.diff(self._iter_source_devices(run_id), hub_index.values())

        await self.transfer.write_changes(run_id, diff.changes())
        return {
            "hub_devices": hub_count,
            "creates": len(diff.creates),
            "deletes": len(diff.deletes),
        }

    async def submit_import(self, run_id: str) -> dict[str, Any]:
        url = await self.staging.generate_access_url(run_id, "rwd", IMPORT_URL_TTL_SECONDS)
        job = await self.hub.submit_import_job(url, url, IMPORT_BLOB_NAME)
        logger.info(f"Started import job {job.job_id} for run {run_id}")
        return job.to_dict()

    async def _apply_change(self, device: DeviceRecord) -> OperationResult:
        try:
            if device.change_kind == ChangeKind.DELETE:
                return await self.hub.delete_device(device.id)
            return await self.hub.create_device(device.with_change(ChangeKind.NONE))
        except Exception as e:
            return OperationResult.from_exception(e)

    async def apply_manual_batch(self, run_id: str, start: int, count: int) -> dict[str, Any]:
        """Apply ``count`` staged changes from ``start`` one device at a time."""
        devices = await self.transfer.read_changes(run_id, start, count)
        results = await process_concurrent(
            devices, self._apply_change, max_concurrent=self.manual_concurrency
        )

        batch = ManualBatchResult()
        for device, result in zip(devices, results):
            if result.outcome == OutcomeKind.SUCCESS:
                batch.changed += 1
                logger.info(f"Device {device.id} {device.change_kind.value}d in hub")
            elif result.succeeded:
                batch.skipped += 1
                logger.info(f"Device {device.id} {device.change_kind.value} skipped: {result.message}")
            else:
                batch.failed += 1
                batch.failed_ids.append(device.id)
                logger.error(
                    f"Failed to {device.change_kind.value} device {device.id} in hub: {result.message}"
                )
        return batch.to_dict()

    async def cleanup(self, run_id: str) -> bool:
        return await self.staging.delete_container(run_id)

    # ----------------------------------------
    # Orchestration
    # ----------------------------------------

    async def _run_manual_import(self, ctx, run_id: str, result: ReconciliationResult) -> None:
        errors = ErrorCollector()
        start = 0
        while True:
            batch = ManualBatchResult.from_dict(
                await ctx.call(
                    "hub.manual_import_batch",
                    self.apply_manual_batch,
                    run_id,
                    start,
                    self.manual_batch_size,
                )
            )
            result.manual_changed += batch.changed
            result.manual_skipped += batch.skipped
            result.manual_failed += batch.failed
            for device_id in batch.failed_ids:
                errors.add(HubSyncError(f"Manual import failed for {device_id}"), {"device_id": device_id})

            processed = batch.changed + batch.skipped + batch.failed
            if processed < self.manual_batch_size:
                break
            start += processed

        if errors.has_errors():
            ctx.log(logging.WARNING, str(errors.to_exception(succeeded=result.manual_changed)))

    async def run(self, ctx, input: dict[str, Any] | None = None) -> dict[str, Any]:
        """Orchestration body. The workflow instance id is the run id."""
        run_id = ctx.instance_id
        result = ReconciliationResult(run_id=run_id)
        stage = "prepare"
        ctx.log(logging.INFO, f"Reconciliation {run_id} started (export job: {self.use_export_job})")

        try:
            await ctx.call("staging.create_container", self.prepare_staging, run_id)

            export_job: SyncJob | None = None
            if self.use_export_job:
                stage = "export_submit"
                export_job = SyncJob.from_dict(await ctx.call("hub.submit_export", self.submit_export, run_id))

            stage = "retrieve_external"
            start_page = 0
            while True:
                page_result = PageTransferResult.from_dict(
                    await ctx.call("external.retrieve_pages", self.retrieve_pages, run_id, start_page)
                )
                result.external_device_count += page_result.items_processed
                result.pages = page_result.last_page_index
                if not page_result.has_more:
                    break
                start_page = page_result.last_page_index

            if export_job is not None:
                stage = "export_wait"
                job = await self.poller.wait(ctx, export_job.job_id, self.export_policy, name="hub.export_status")
                JobPoller.require_success(job)

            stage = "diff"
            summary = await ctx.call(
                "reconcile.build_change_set", self.build_change_set, run_id, export_job is not None
            )
            result.hub_device_count = summary["hub_devices"]
            result.creates = summary["creates"]
            result.deletes = summary["deletes"]

            changes = result.change_count
            if changes > 0:
                if self.change_job_threshold == 0 or self.change_job_threshold <= changes:
                    stage = "import_job"
                    result.apply_mode = ApplyMode.IMPORT_JOB
                    import_job = SyncJob.from_dict(await ctx.call("hub.submit_import", self.submit_import, run_id))
                    result.import_job_id = import_job.job_id
                    await ctx.sleep(self.import_initial_wait_seconds)
                    job = await self.poller.wait(ctx, import_job.job_id, self.import_policy, name="hub.import_status")
                    JobPoller.require_success(job)
                else:
                    stage = "manual_import"
                    result.apply_mode = ApplyMode.MANUAL
                    await self._run_manual_import(ctx, run_id, result)

        except Exception as e:
            ctx.log(logging.ERROR, f"Reconciliation {run_id} aborted during {stage}: {e}")
            raise ReconciliationError(
                f"Reconciliation aborted during {stage}: {e}",
                run_id=run_id,
                stage=stage,
                cause=e,
            ) from e

        await ctx.call("staging.cleanup", self.cleanup, run_id)

        result.completed_at = datetime.fromtimestamp(await ctx.now(), timezone.utc)
        ctx.log(
            logging.INFO,
            f"Reconciliation {run_id} finished: {result.external_device_count} external devices, "
            f"{result.creates} creates, {result.deletes} deletes via {result.apply_mode.value}",
        )
        return result.to_dict()


__all__ = ["ReconciliationOrchestrator"]
