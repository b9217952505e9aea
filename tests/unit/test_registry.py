"""
Tests for the provider registry: registration, lazy adapter construction,
credential enforcement and learned structured output limitations.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from role_dispatch.core.errors import AuthError, ConfigurationError
from role_dispatch.core.providers.base import AuthRequirement
from role_dispatch.core.providers.registry import (
    AdapterSettings,
    ProviderRegistry,
    build_default_registry,
)

from tests.conftest import FakeAdapter, make_descriptor


class CountingFactory:
    def __init__(self, descriptor):
        self.descriptor = descriptor
        self.calls = []

    def __call__(self, settings):
        self.calls.append(settings)
        return FakeAdapter(self.descriptor)


# =============================================================================
# Registration
# =============================================================================


class TestRegistration:
    """Tests for register / unregister."""

    def test_register_and_lookup(self, registry):
        """Registered providers are listed and described."""
        descriptor = make_descriptor("alpha", native=True)
        registry.register(descriptor, CountingFactory(descriptor))

        assert registry.has("alpha")
        assert registry.names() == ["alpha"]
        assert registry.descriptor("alpha") is descriptor
        assert registry.describe()[0]["name"] == "alpha"
        assert "native_structured_output" in registry.describe()[0]["capabilities"]

    def test_duplicate_rejected(self, registry):
        """Registering the same name twice is an error."""
        descriptor = make_descriptor("alpha")
        registry.register(descriptor, CountingFactory(descriptor))
        with pytest.raises(ValueError, match="already registered"):
            registry.register(descriptor, CountingFactory(descriptor))

    def test_replace_drops_cached_adapters(self, registry):
        """replace=True swaps the factory and forgets old adapters."""
        descriptor = make_descriptor("alpha")
        first = CountingFactory(descriptor)
        second = CountingFactory(descriptor)
        registry.register(descriptor, first)
        old = registry.get("alpha")

        registry.register(descriptor, second, replace=True)
        new = registry.get("alpha")

        assert new is not old
        assert len(second.calls) == 1

    def test_unregister(self, registry):
        """unregister removes the provider."""
        descriptor = make_descriptor("alpha")
        registry.register(descriptor, CountingFactory(descriptor))
        registry.unregister("alpha")
        assert not registry.has("alpha")

    def test_unknown_descriptor(self, registry):
        """Unknown names raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="not registered"):
            registry.descriptor("missing")


# =============================================================================
# Adapter construction
# =============================================================================


class TestGet:
    """Tests for lazy adapter construction and caching."""

    def test_constructed_once_per_settings(self, registry):
        """The same (name, settings) pair yields the same adapter."""
        descriptor = make_descriptor("alpha")
        factory = CountingFactory(descriptor)
        registry.register(descriptor, factory)

        settings = AdapterSettings(base_url="http://a")
        assert registry.get("alpha", settings) is registry.get("alpha", settings)
        assert len(factory.calls) == 1

        registry.get("alpha", AdapterSettings(base_url="http://b"))
        assert len(factory.calls) == 2

    def test_concurrent_get_constructs_once(self, registry):
        """Threads racing on one key share a single slow construction."""
        descriptor = make_descriptor("alpha")
        factory = CountingFactory(descriptor)

        def slow_factory(settings):
            time.sleep(0.05)
            return factory(settings)

        registry.register(descriptor, slow_factory)
        settings = AdapterSettings(api_key="k")
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            return registry.get("alpha", settings)

        with ThreadPoolExecutor(max_workers=8) as pool:
            adapters = list(pool.map(lambda _: worker(), range(8)))

        assert len(factory.calls) == 1
        assert all(adapter is adapters[0] for adapter in adapters)

    @pytest.mark.asyncio
    async def test_concurrent_get_from_event_loop(self, registry):
        """Requests resolving adapters via worker threads share one instance."""
        descriptor = make_descriptor("alpha")
        factory = CountingFactory(descriptor)

        def slow_factory(settings):
            time.sleep(0.05)
            return factory(settings)

        registry.register(descriptor, slow_factory)

        adapters = await asyncio.gather(*(asyncio.to_thread(registry.get, "alpha") for _ in range(5)))

        assert len(factory.calls) == 1
        assert len({id(adapter) for adapter in adapters}) == 1

    def test_unregistered_provider(self, registry):
        """get() on an unknown provider raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            registry.get("missing")

    def test_required_auth_without_key(self, registry):
        """REQUIRED providers refuse to construct without a credential."""
        descriptor = make_descriptor("alpha", auth=AuthRequirement.REQUIRED, api_key_env="ALPHA_KEY")
        factory = CountingFactory(descriptor)
        registry.register(descriptor, factory)

        with pytest.raises(AuthError, match="ALPHA_KEY"):
            registry.get("alpha", AdapterSettings())
        assert factory.calls == []

        assert registry.get("alpha", AdapterSettings(api_key="k")) is not None

    def test_factory_failure_becomes_auth_error(self, registry):
        """Construction failures surface as AuthError."""
        descriptor = make_descriptor("alpha")

        def broken(settings):
            raise RuntimeError("bad settings")

        registry.register(descriptor, broken)
        with pytest.raises(AuthError, match="bad settings") as exc_info:
            registry.get("alpha")
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_configuration_error_from_factory(self, registry):
        """Adapter-raised dispatch errors are wrapped with their message."""
        descriptor = make_descriptor("alpha")

        def needs_url(settings):
            raise ConfigurationError("requires a base_url")

        registry.register(descriptor, needs_url)
        with pytest.raises(AuthError, match="requires a base_url"):
            registry.get("alpha")

    def test_clear_cache(self, registry):
        """clear_cache forces reconstruction."""
        descriptor = make_descriptor("alpha")
        factory = CountingFactory(descriptor)
        registry.register(descriptor, factory)
        registry.get("alpha")
        registry.clear_cache()
        registry.get("alpha")
        assert len(factory.calls) == 2

    def test_settings_repr_masks_key(self):
        """The credential never appears in repr()."""
        assert "secret" not in repr(AdapterSettings(api_key="secret"))


class TestRegisterLazy:
    """Tests for lazily imported adapter modules."""

    def test_missing_factory_attribute(self, registry):
        """A module without the factory attribute fails construction."""
        registry.register_lazy(make_descriptor("alpha"), "role_dispatch.core.usage", "no_such_factory")
        with pytest.raises(AuthError, match="no_such_factory"):
            registry.get("alpha")

    def test_missing_module(self, registry):
        """An unimportable module fails construction."""
        registry.register_lazy(make_descriptor("alpha"), "role_dispatch.no_such_module", "factory")
        with pytest.raises(AuthError):
            registry.get("alpha")


# =============================================================================
# Structured output routing
# =============================================================================


class TestStructuredSupport:
    """Tests for learned native structured output limitations."""

    def test_follows_capability(self, registry):
        """Native support follows the declared capability by default."""
        registry.register(make_descriptor("native", native=True), lambda s: None)
        registry.register(make_descriptor("plain"), lambda s: None)
        assert registry.supports_native_structured("native", "m") is True
        assert registry.supports_native_structured("plain", "m") is False

    def test_marked_model_uses_emulation(self, registry, caplog):
        """A model marked unsupported is routed to emulation, others are not."""
        registry.register(make_descriptor("native", native=True), lambda s: None)
        with caplog.at_level(logging.INFO, logger="role_dispatch"):
            registry.mark_structured_output_unsupported("native", "old-model")
        assert registry.supports_native_structured("native", "old-model") is False
        assert registry.supports_native_structured("native", "new-model") is True
        assert "old-model" in caplog.text


# =============================================================================
# Default registry
# =============================================================================


class TestDefaultRegistry:
    """Tests for the built-in registry."""

    def test_builtin_names(self):
        """The built-in adapters are registered."""
        registry = build_default_registry()
        assert registry.names() == ["anthropic", "ollama", "openai", "openai-compatible"]

    def test_fresh_instances(self):
        """Each call returns an independent registry."""
        assert build_default_registry() is not build_default_registry()

    def test_openai_requires_key(self):
        """The OpenAI provider refuses to construct without a key."""
        with pytest.raises(AuthError, match="OPENAI_API_KEY"):
            build_default_registry().get("openai", AdapterSettings())

    def test_ollama_constructs_without_key(self):
        """Local providers need no credential."""
        adapter = build_default_registry().get("ollama", AdapterSettings())
        assert adapter.name == "ollama"
        assert adapter.base_url == "http://localhost:11434/v1"

    def test_openai_compatible_requires_base_url(self):
        """The compatible provider needs an endpoint."""
        registry = build_default_registry()
        with pytest.raises(AuthError, match="base_url"):
            registry.get("openai-compatible", AdapterSettings())
        adapter = registry.get("openai-compatible", AdapterSettings(base_url="http://vllm:8000/v1"))
        assert adapter.api_key == "not-needed"
