"""Tests for the bulk reconciliation workflow."""

import pytest

from src.hubsync.api.resilience import OperationResult, RetryPolicy
from src.hubsync.sync.domain.entities import ApplyMode, JobStatus
from src.hubsync.sync.use_cases.paged_transfer import IMPORT_BLOB_NAME
from src.hubsync.sync.use_cases.reconcile import ReconciliationOrchestrator
from src.hubsync.sync.workflow.durable import WorkflowStatus

JOB_POLICY = RetryPolicy(initial_interval=60, backoff_coefficient=1.0, max_interval=60, max_attempts=5)
RUN_ID = "run-1"


def register(runtime, hub, external, staging, **options):
    orchestrator = ReconciliationOrchestrator(
        hub=hub,
        external_registry=external,
        staging=staging,
        export_policy=JOB_POLICY,
        import_policy=JOB_POLICY,
        **options,
    )
    runtime.register(ReconciliationOrchestrator.NAME, orchestrator.run)
    return orchestrator


async def reconcile(runtime):
    return await runtime.run(ReconciliationOrchestrator.NAME, instance_id=RUN_ID)


async def effect_names(effect_store) -> list[str]:
    return [record["name"] for record in await effect_store.load(RUN_ID)]


class TestManualApply:

    @pytest.mark.asyncio
    async def test_small_change_set_is_applied_device_by_device(self, runtime, hub, external, staging):
        external.add_devices("a", "b", "c")
        hub.add_devices("b", "d")
        register(runtime, hub, external, staging)

        outcome = await reconcile(runtime)

        assert outcome.succeeded
        assert outcome.output["external_device_count"] == 3
        assert outcome.output["hub_device_count"] == 2
        assert outcome.output["creates"] == 2
        assert outcome.output["deletes"] == 1
        assert outcome.output["apply_mode"] == ApplyMode.MANUAL.value
        assert outcome.output["manual_changed"] == 3
        assert sorted(hub.devices) == ["a", "b", "c"]
        assert hub.devices["a"].tags == {"EUI": "0000000000000001", "ref": "ref-a"}
        assert hub.deleted == ["d"]

    @pytest.mark.asyncio
    async def test_failed_device_does_not_stop_the_batch(self, runtime, hub, external, staging):
        external.add_devices("a", "b", "c")
        hub.create_results["b"] = OperationResult.permanent("rejected by hub")
        register(runtime, hub, external, staging)

        outcome = await reconcile(runtime)

        assert outcome.succeeded
        assert outcome.output["manual_changed"] == 2
        assert outcome.output["manual_failed"] == 1
        assert sorted(hub.devices) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_existing_device_is_counted_as_skipped(self, runtime, hub, external, staging):
        external.add_devices("a")
        register(runtime, hub, external, staging, use_export_job=False)
        hub.create_results["a"] = OperationResult.noop("Device a already exists")

        outcome = await reconcile(runtime)

        assert outcome.output["manual_skipped"] == 1
        assert outcome.output["manual_changed"] == 0

    @pytest.mark.asyncio
    async def test_changes_are_applied_in_batches(self, runtime, hub, external, staging, effect_store):
        external.add_devices("a", "b", "c", "d", "e")
        register(runtime, hub, external, staging, manual_batch_size=2)

        outcome = await reconcile(runtime)

        assert outcome.output["manual_changed"] == 5
        names = await effect_names(effect_store)
        assert names.count("hub.manual_import_batch") == 3


class TestImportJobApply:

    @pytest.mark.asyncio
    async def test_threshold_reached_uses_import_job(self, runtime, hub, external, staging, clock):
        external.add_devices("a", "b", "c")
        hub.add_devices("z")
        register(runtime, hub, external, staging, change_job_threshold=4)

        outcome = await reconcile(runtime)

        assert outcome.succeeded
        assert outcome.output["apply_mode"] == ApplyMode.IMPORT_JOB.value
        assert outcome.output["import_job_id"] == "import-2"
        assert hub.created == []
        input_url, output_url, blob_name = hub.import_requests[0]
        assert blob_name == IMPORT_BLOB_NAME
        assert staging.verify_access_url(input_url, "r") == RUN_ID
        assert 30 in clock.sleeps

    @pytest.mark.asyncio
    async def test_zero_threshold_always_uses_import_job(self, runtime, hub, external, staging):
        external.add_devices("a")
        register(runtime, hub, external, staging, change_job_threshold=0)

        outcome = await reconcile(runtime)

        assert outcome.output["apply_mode"] == ApplyMode.IMPORT_JOB.value

    @pytest.mark.asyncio
    async def test_failed_import_job_fails_the_run(self, runtime, hub, external, staging):
        external.add_devices("a")
        hub.import_status = JobStatus.FAILED
        register(runtime, hub, external, staging, change_job_threshold=0)

        outcome = await reconcile(runtime)

        assert outcome.status == WorkflowStatus.FAILED
        assert outcome.error["error_type"] == "ReconciliationError"
        assert "import_job" in outcome.error["message"]


class TestHubSource:

    @pytest.mark.asyncio
    async def test_export_job_is_the_default_source(self, runtime, hub, external, staging, effect_store):
        external.add_devices("a")
        hub.add_devices("a")
        register(runtime, hub, external, staging)

        outcome = await reconcile(runtime)

        assert [job.job_id for job in hub.submitted] == ["export-1"]
        assert outcome.output["apply_mode"] == ApplyMode.NONE.value
        names = await effect_names(effect_store)
        assert "hub.export_status#1" in names
        assert "hub.export_status#2" in names

    @pytest.mark.asyncio
    async def test_listing_source_skips_export_job(self, runtime, hub, external, staging):
        external.add_devices("a", "b")
        hub.add_devices("a", "b", "c")
        register(runtime, hub, external, staging, use_export_job=False)

        outcome = await reconcile(runtime)

        assert hub.submitted == []
        assert outcome.output["deletes"] == 1
        assert hub.deleted == ["c"]


class TestAborts:

    @pytest.mark.asyncio
    async def test_page_error_aborts_before_any_change(self, runtime, hub, external, staging):
        external.add_devices("a", "b", "c")
        external.page_errors[1] = ConnectionError("listing failed")
        hub.add_devices("z")
        register(runtime, hub, external, staging)

        outcome = await reconcile(runtime)

        assert outcome.status == WorkflowStatus.FAILED
        assert "retrieve_external" in outcome.error["message"]
        assert hub.deleted == []
        assert hub.created == []

    @pytest.mark.asyncio
    async def test_failed_export_job_aborts_without_import(self, runtime, hub, external, staging):
        external.add_devices("a")
        hub.export_status = JobStatus.FAILED
        register(runtime, hub, external, staging, change_job_threshold=0)

        outcome = await reconcile(runtime)

        assert outcome.status == WorkflowStatus.FAILED
        assert "export_wait" in outcome.error["message"]
        assert hub.import_requests == []
        assert hub.created == []

    @pytest.mark.asyncio
    async def test_duplicate_external_id_aborts(self, runtime, hub, external, staging):
        external.pages = [[
            {"name": "a", "EUI": "0000000000000001", "ref": "1"},
            {"name": "a", "EUI": "0000000000000002", "ref": "2"},
        ]]
        register(runtime, hub, external, staging)

        outcome = await reconcile(runtime)

        assert outcome.status == WorkflowStatus.FAILED
        assert "diff" in outcome.error["message"]


class TestStagingLifecycle:

    @pytest.mark.asyncio
    async def test_staging_is_deleted_after_success(self, runtime, hub, external, staging):
        external.add_devices("a")
        register(runtime, hub, external, staging)

        await reconcile(runtime)

        assert not (staging.root / RUN_ID).exists()

    @pytest.mark.asyncio
    async def test_staging_is_kept_after_failure(self, runtime, hub, external, staging):
        external.add_devices("a")
        hub.export_status = JobStatus.FAILED
        register(runtime, hub, external, staging)

        await reconcile(runtime)

        assert await staging.list_blobs(RUN_ID) != []
