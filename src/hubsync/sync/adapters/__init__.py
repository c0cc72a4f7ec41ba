"""Adapters layer - Infrastructure implementations for sync operations.

This layer contains concrete implementations of the ports defined in the domain layer:
- ActilityRegistry: ThingPark implementation of IExternalRegistry
- HubApiRegistry: REST implementation of IHubRegistry
- FileStagingStore: filesystem implementation of IStagingStore
- InMemoryEffectLogStore / PostgresEffectLogStore: IEffectLogStore implementations

Importing this package registers the bundled external registries in the
name-to-factory table.
"""

from .actility import ActilityRegistry
from .effect_log import InMemoryEffectLogStore, PostgresEffectLogStore
from .external_registry import (
    available_external_registries,
    create_external_registry,
    register_external_registry,
)
from .file_staging import FileStagingStore
from .hub_api import HubApiRegistry

__all__ = [
    # External registries
    "ActilityRegistry",
    "available_external_registries",
    "create_external_registry",
    "register_external_registry",
    # Hub
    "HubApiRegistry",
    # Storage
    "FileStagingStore",
    "InMemoryEffectLogStore",
    "PostgresEffectLogStore",
]
