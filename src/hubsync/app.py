"""Application wiring for the registry sync service.

HubSyncApp builds every component from SyncSettings, owns the lifetime of
the HTTP sessions and the database pool, and exposes the service's
entry points:

    - reconcile(): one bulk reconciliation run
    - dispatch_events(): route a batch of hub lifecycle events
    - resume() / resume_pending(): continue workflows from the effect log
    - facade: direct hub device create/delete

Example:
    settings = SyncSettings.from_env()
    async with HubSyncApp(settings) as app:
        outcome = await app.reconcile()
"""

import logging
from contextlib import AsyncExitStack
from typing import Any, Optional

import asyncpg

from .api.auth import TokenCache
from .api.client import RegistryHttpClient
from .api.exceptions import ConfigurationError
from .config import SyncSettings
from .sync.adapters import (
    FileStagingStore,
    HubApiRegistry,
    InMemoryEffectLogStore,
    PostgresEffectLogStore,
    create_external_registry,
)
from .sync.domain.ports import IEffectLogStore, IExternalRegistry, IHubRegistry, IStagingStore
from .sync.schemas import parse_events
from .sync.use_cases import (
    DeviceDeleteOrchestrator,
    DeviceEventDispatcher,
    DeviceSyncOrchestrator,
    HubDeviceFacade,
    PagedBulkTransfer,
    ReconciliationOrchestrator,
)
from .sync.workflow import WorkflowOutcome, WorkflowRuntime

logger = logging.getLogger(__name__)


class HubSyncApp:
    """Composition root. Use as an async context manager.

    Components passed to the constructor are used as-is (tests inject
    fakes); anything left out is built from settings on enter.
    """

    def __init__(
        self,
        settings: SyncSettings,
        hub: Optional[IHubRegistry] = None,
        external_registry: Optional[IExternalRegistry] = None,
        staging: Optional[IStagingStore] = None,
        effect_store: Optional[IEffectLogStore] = None,
        token_cache: Optional[TokenCache] = None,
        runtime: Optional[WorkflowRuntime] = None,
    ):
        self.settings = settings
        self.token_cache = token_cache or TokenCache()
        self.hub = hub
        self.external_registry = external_registry
        self.staging = staging
        self.effect_store = effect_store
        self.runtime = runtime
        self._stack: Optional[AsyncExitStack] = None

    async def __aenter__(self) -> "HubSyncApp":
        self._stack = AsyncExitStack()
        try:
            await self._build(self._stack)
        except BaseException:
            await self._stack.aclose()
            self._stack = None
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None

    # ----------------------------------------
    # Construction
    # ----------------------------------------

    async def _build_hub(self, stack: AsyncExitStack) -> IHubRegistry:
        credentials = self.settings.hub_credentials()

        async def hub_token() -> str:
            return await self.token_cache.get(
                credentials.token_url,
                credentials,
                ttl=self.settings.external_token_ttl_seconds,
            )

        client = RegistryHttpClient(
            hub_token,
            base_url=self.settings.hub_base_url,
            on_unauthorized=lambda: self.token_cache.invalidate(credentials.token_url),
        )
        await stack.enter_async_context(client)
        return HubApiRegistry(client)

    async def _build_effect_store(self, stack: AsyncExitStack) -> IEffectLogStore:
        if not self.settings.database_url:
            logger.warning("DATABASE_URL not set, workflow state is kept in memory only")
            return InMemoryEffectLogStore()

        pool = await asyncpg.create_pool(self.settings.database_url, min_size=1, max_size=5)
        stack.push_async_callback(pool.close)
        store = PostgresEffectLogStore(pool)
        await store.ensure_schema()
        logger.info("Using PostgreSQL effect log")
        return store

    async def _build(self, stack: AsyncExitStack) -> None:
        settings = self.settings

        if self.hub is None:
            self.hub = await self._build_hub(stack)

        if self.external_registry is None:
            registry = create_external_registry(
                settings.external_system_name,
                settings=settings,
                token_cache=self.token_cache,
            )
            if hasattr(registry, "__aenter__"):
                registry = await stack.enter_async_context(registry)
            self.external_registry = registry

        if self.staging is None:
            self.staging = FileStagingStore(settings.staging_root, settings.staging_signing_key)

        if self.effect_store is None:
            self.effect_store = await self._build_effect_store(stack)

        if self.runtime is None:
            self.runtime = WorkflowRuntime(self.effect_store)

        self.reconciler = ReconciliationOrchestrator(
            hub=self.hub,
            external_registry=self.external_registry,
            staging=self.staging,
            export_policy=settings.export_job_policy(),
            import_policy=settings.import_job_policy(),
            transfer=PagedBulkTransfer(
                self.external_registry,
                self.staging,
                budget_seconds=settings.page_budget_seconds,
            ),
            use_export_job=settings.use_export_job,
            change_job_threshold=settings.change_job_threshold,
            manual_batch_size=settings.manual_batch_size,
            import_initial_wait_seconds=settings.import_initial_wait_seconds,
        )
        self.device_creator = DeviceSyncOrchestrator(
            self.hub,
            self.external_registry,
            readiness_policy=settings.readiness_policy(),
            create_policy=settings.external_call_policy(),
        )
        self.device_deleter = DeviceDeleteOrchestrator(
            self.external_registry,
            delete_policy=settings.external_call_policy(),
        )

        self.runtime.register(ReconciliationOrchestrator.NAME, self.reconciler.run)
        self.runtime.register(DeviceSyncOrchestrator.NAME, self.device_creator.run)
        self.runtime.register(DeviceDeleteOrchestrator.NAME, self.device_deleter.run)

        self.dispatcher = DeviceEventDispatcher(self.runtime, self.external_registry)
        self.facade = HubDeviceFacade(
            self.hub,
            enabled=settings.hub_facade_enabled,
            soft_delete=settings.hub_facade_soft_delete,
        )
        logger.info(
            f"Sync service ready: external={self.external_registry.name}, "
            f"workflows={', '.join(self.runtime.registered)}"
        )

    # ----------------------------------------
    # Entry points
    # ----------------------------------------

    @property
    def synchronizer_enabled(self) -> bool:
        return self.settings.hub_synchronizer_enabled

    async def reconcile(self, run_id: Optional[str] = None) -> WorkflowOutcome:
        """Run one bulk reconciliation and wait for it.

        Raises:
            ConfigurationError: HUB_SYNCHRONIZER_ENABLED is false.
        """
        if not self.synchronizer_enabled:
            raise ConfigurationError("Hub synchronizer is disabled (HUB_SYNCHRONIZER_ENABLED=false)")
        return await self.runtime.run(ReconciliationOrchestrator.NAME, instance_id=run_id)

    async def dispatch_events(self, payload: str | bytes | list[dict[str, Any]]) -> list[str]:
        """Parse and dispatch a batch of hub lifecycle events.

        Returns:
            Instance ids of workflows started for the batch.
        """
        return await self.dispatcher.dispatch(parse_events(payload))

    async def wait_all(self, instance_ids: list[str]) -> list[WorkflowOutcome]:
        return [await self.runtime.wait(instance_id) for instance_id in instance_ids]

    async def resume(self, instance_id: str) -> WorkflowOutcome:
        return await self.runtime.resume(instance_id)

    async def resume_pending(self) -> list[str]:
        return await self.runtime.resume_pending()


__all__ = ["HubSyncApp"]
