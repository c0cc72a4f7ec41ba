"""Name-to-factory table for external registry adapters.

Each external system adapter registers a factory under its configured
name. The application looks the factory up with ``EXTERNAL_SYSTEM_NAME``
and never imports a vendor adapter directly.

Example:
    @register_external_registry("acme")
    def _create_acme(settings, token_cache):
        return AcmeRegistry(...)

    registry = create_external_registry("acme", settings=settings, token_cache=cache)
"""

import logging
from typing import Any, Callable

from ...api.exceptions import ConfigurationError
from ..domain.ports import IExternalRegistry

logger = logging.getLogger(__name__)

RegistryFactory = Callable[..., IExternalRegistry]

_FACTORIES: dict[str, RegistryFactory] = {}


def register_external_registry(name: str) -> Callable[[RegistryFactory], RegistryFactory]:
    """Decorator registering ``factory`` under ``name`` (case-insensitive)."""
    key = name.lower()

    def decorator(factory: RegistryFactory) -> RegistryFactory:
        if key in _FACTORIES:
            raise ValueError(f"External registry '{name}' is already registered")
        _FACTORIES[key] = factory
        return factory

    return decorator


def available_external_registries() -> list[str]:
    return sorted(_FACTORIES)


def create_external_registry(name: str, **deps: Any) -> IExternalRegistry:
    """Build the external registry adapter registered as ``name``.

    Raises:
        ConfigurationError: If no adapter is registered under ``name``.
    """
    factory = _FACTORIES.get((name or "").lower())
    if factory is None:
        raise ConfigurationError(
            f"Unknown external system '{name}'. "
            f"Available: {', '.join(available_external_registries()) or 'none'}",
            details={"external_system": name},
        )
    logger.info(f"Using external registry '{name}'")
    return factory(**deps)


__all__ = [
    "RegistryFactory",
    "available_external_registries",
    "create_external_registry",
    "register_external_registry",
]
