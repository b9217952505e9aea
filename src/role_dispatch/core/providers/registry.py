"""
Provider registry.

Holds provider descriptors and adapter factories, and lazily constructs
adapters on first use for a given (provider, settings) pair. A registry is
an ordinary instance injected into the orchestrator and resolver, so tests
can build isolated registries without shared state.

Example:
    >>> from role_dispatch.core.providers.registry import ProviderRegistry
    >>> registry = ProviderRegistry()
    >>> registry.register(descriptor, lambda settings: MyAdapter(settings))
    >>> adapter = registry.get("my-provider", AdapterSettings(api_key="..."))
"""

from __future__ import annotations

import importlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from role_dispatch.core.errors import AuthError, ConfigurationError, DispatchError
from role_dispatch.core.providers.base import (
    AuthRequirement,
    ProviderAdapter,
    ProviderCapability,
    ProviderDescriptor,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Type Definitions
# =============================================================================


@dataclass(frozen=True)
class AdapterSettings:
    """Resolved construction inputs for an adapter.

    Attributes:
        api_key: Credential (None when not configured)
        base_url: Endpoint override
    """

    api_key: Optional[str] = None
    base_url: Optional[str] = None

    def __repr__(self) -> str:
        masked = "***" if self.api_key else None
        return f"AdapterSettings(api_key={masked!r}, base_url={self.base_url!r})"


class AdapterFactory(Protocol):
    """Callable that constructs a ProviderAdapter from resolved settings."""

    def __call__(self, settings: AdapterSettings) -> ProviderAdapter:
        ...


@dataclass
class ProviderRegistration:
    """Internal record for a registered provider."""

    descriptor: ProviderDescriptor
    factory: AdapterFactory


# =============================================================================
# Registry
# =============================================================================


class ProviderRegistry:
    """Registered providers plus a lazily populated adapter cache.

    ``get`` is safe to call from concurrent requests: construction for a
    key happens at most once, under a lock.
    """

    def __init__(self) -> None:
        self._registrations: Dict[str, ProviderRegistration] = {}
        self._adapters: Dict[Tuple[str, AdapterSettings], ProviderAdapter] = {}
        self._limited_structured: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(
        self,
        descriptor: ProviderDescriptor,
        factory: AdapterFactory,
        *,
        replace: bool = False,
    ) -> None:
        """Register a provider.

        Raises:
            ValueError: If the name is already registered and replace=False
        """
        name = descriptor.name
        with self._lock:
            if name in self._registrations and not replace:
                raise ValueError(f"Provider '{name}' is already registered")
            self._registrations[name] = ProviderRegistration(descriptor=descriptor, factory=factory)
            # Drop adapters built by a replaced factory
            for key in [k for k in self._adapters if k[0] == name]:
                del self._adapters[key]
        logger.debug("Provider '%s' registered", name)

    def register_lazy(
        self,
        descriptor: ProviderDescriptor,
        module_path: str,
        factory_attr: str,
        *,
        replace: bool = False,
    ) -> None:
        """Register a provider whose adapter module is imported on first use."""

        def _factory(settings: AdapterSettings) -> ProviderAdapter:
            module = importlib.import_module(module_path)
            factory_obj = getattr(module, factory_attr, None)
            if factory_obj is None:
                raise ConfigurationError(
                    f"Module '{module_path}' is missing '{factory_attr}'",
                    provider=descriptor.name,
                )
            return factory_obj(settings)

        self.register(descriptor, _factory, replace=replace)

    def unregister(self, name: str) -> None:
        with self._lock:
            self._registrations.pop(name, None)
            for key in [k for k in self._adapters if k[0] == name]:
                del self._adapters[key]

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def has(self, name: str) -> bool:
        return name in self._registrations

    def names(self) -> List[str]:
        return sorted(self._registrations)

    def descriptor(self, name: str) -> ProviderDescriptor:
        """Return the descriptor for a registered provider.

        Raises:
            ConfigurationError: If the provider is not registered
        """
        registration = self._registrations.get(name)
        if registration is None:
            raise ConfigurationError(f"Provider '{name}' is not registered", provider=name)
        return registration.descriptor

    def describe(self) -> List[Dict[str, Any]]:
        return [self._registrations[name].descriptor.to_dict() for name in self.names()]

    def get(self, name: str, settings: Optional[AdapterSettings] = None) -> ProviderAdapter:
        """Return the adapter for (name, settings), constructing it once.

        Raises:
            ConfigurationError: If the provider is not registered
            AuthError: If the adapter cannot be constructed, including a
                missing credential for a provider that requires one
        """
        settings = settings or AdapterSettings()
        key = (name, settings)

        adapter = self._adapters.get(key)
        if adapter is not None:
            return adapter

        with self._lock:
            adapter = self._adapters.get(key)
            if adapter is not None:
                return adapter

            registration = self._registrations.get(name)
            if registration is None:
                raise ConfigurationError(f"Provider '{name}' is not registered", provider=name)

            descriptor = registration.descriptor
            if descriptor.auth_requirement == AuthRequirement.REQUIRED and not settings.api_key:
                env_hint = f" Set {descriptor.api_key_env}." if descriptor.api_key_env else ""
                raise AuthError(f"No API key configured for provider '{name}'.{env_hint}", provider=name)

            try:
                adapter = registration.factory(settings)
            except AuthError:
                raise
            except DispatchError as exc:
                raise AuthError(f"Could not construct adapter for '{name}': {exc.message}", provider=name) from exc
            except Exception as exc:
                raise AuthError(f"Could not construct adapter for '{name}': {exc}", provider=name) from exc

            self._adapters[key] = adapter
            logger.debug("Constructed adapter for provider '%s'", name)
            return adapter

    def clear_cache(self) -> None:
        """Drop every constructed adapter (registrations are kept)."""
        with self._lock:
            self._adapters.clear()

    # -------------------------------------------------------------------------
    # Learned structured output limitations
    # -------------------------------------------------------------------------

    def mark_structured_output_unsupported(self, name: str, model: str) -> None:
        """Record that a model rejected native structured output requests."""
        with self._lock:
            self._limited_structured.add((name, model))
        logger.info("Routing structured output for %s/%s through emulation from now on", name, model)

    def supports_native_structured(self, name: str, model: str) -> bool:
        """Whether structured requests for this model go to generate_object."""
        if (name, model) in self._limited_structured:
            return False
        return self.descriptor(name).supports(ProviderCapability.NATIVE_STRUCTURED_OUTPUT)


# =============================================================================
# Built-in providers
# =============================================================================


def build_default_registry() -> ProviderRegistry:
    """Create a fresh registry with the built-in adapters registered.

    Adapter modules (and their SDKs) are imported lazily on first use.
    """
    from role_dispatch.core.providers.anthropic import ANTHROPIC_DESCRIPTOR
    from role_dispatch.core.providers.local import OLLAMA_DESCRIPTOR
    from role_dispatch.core.providers.openai import (
        OPENAI_COMPATIBLE_DESCRIPTOR,
        OPENAI_DESCRIPTOR,
    )

    registry = ProviderRegistry()
    registry.register_lazy(OPENAI_DESCRIPTOR, "role_dispatch.core.providers.openai", "create_openai_adapter")
    registry.register_lazy(
        OPENAI_COMPATIBLE_DESCRIPTOR,
        "role_dispatch.core.providers.openai",
        "create_openai_compatible_adapter",
    )
    registry.register_lazy(ANTHROPIC_DESCRIPTOR, "role_dispatch.core.providers.anthropic", "create_anthropic_adapter")
    registry.register_lazy(OLLAMA_DESCRIPTOR, "role_dispatch.core.providers.local", "create_ollama_adapter")
    return registry


__all__ = [
    "AdapterSettings",
    "AdapterFactory",
    "ProviderRegistration",
    "ProviderRegistry",
    "build_default_registry",
]
