"""
Root pytest configuration and shared fixtures.

Provides scripted fake adapters, isolated provider registries, a zero-delay
recording sleep, and global configuration reset between tests. No test
touches the network.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from role_dispatch.core.llm_config import (
    DispatchConfig,
    RoleConfig,
    reset_dispatch_config,
)
from role_dispatch.core.logging_config import ROOT_LOGGER
from role_dispatch.core.providers.base import (
    AuthRequirement,
    GenerationRequest,
    ObjectResult,
    ProviderAdapter,
    ProviderCapability,
    ProviderDescriptor,
    StreamChunk,
    TextResult,
)
from role_dispatch.core.providers.registry import AdapterSettings, ProviderRegistry


# =============================================================================
# Fake adapters
# =============================================================================


def make_descriptor(
    name: str,
    *,
    native: bool = False,
    streaming: bool = False,
    temperature: bool = True,
    auth: AuthRequirement = AuthRequirement.NONE,
    default_model: Optional[str] = "fake-model",
    api_key_env: Optional[str] = None,
) -> ProviderDescriptor:
    capabilities = {ProviderCapability.TOKEN_LIMIT}
    if native:
        capabilities.add(ProviderCapability.NATIVE_STRUCTURED_OUTPUT)
    if streaming:
        capabilities.add(ProviderCapability.STREAMING)
    if temperature:
        capabilities.add(ProviderCapability.TEMPERATURE_CONTROL)
    return ProviderDescriptor(
        name=name,
        auth_requirement=auth,
        capabilities=frozenset(capabilities),
        default_model=default_model,
        api_key_env=api_key_env,
    )


class FakeAdapter(ProviderAdapter):
    """Adapter that replays scripted outcomes.

    Each call consumes the next outcome; the last outcome repeats once the
    script runs out. An outcome is a string (text reply), a dict or list
    (object for generate_object, JSON text for generate_text), or an
    exception instance to raise.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        outcomes: Optional[Sequence[Any]] = None,
        *,
        usage: Any = None,
        delay: float = 0.0,
        stream_chunks: Optional[Sequence[str]] = None,
    ):
        self.descriptor = descriptor
        self.outcomes: List[Any] = list(outcomes or ["ok"])
        self.usage = usage if usage is not None else {"input_tokens": 10, "output_tokens": 5}
        self.delay = delay
        self.stream_chunks = list(stream_chunks) if stream_chunks is not None else None
        self.calls: List[GenerationRequest] = []
        self.object_calls: List[GenerationRequest] = []
        self.cancelled = False

    def _next(self) -> Any:
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def _wait(self) -> None:
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    async def generate_text(self, request: GenerationRequest) -> TextResult:
        self.calls.append(request)
        await self._wait()
        outcome = self._next()
        text = outcome if isinstance(outcome, str) else json.dumps(outcome)
        return TextResult(text=text, usage=self.usage, model=request.model)

    async def generate_object(self, request: GenerationRequest) -> ObjectResult:
        if not self.supports(ProviderCapability.NATIVE_STRUCTURED_OUTPUT):
            return await super().generate_object(request)
        self.object_calls.append(request)
        await self._wait()
        outcome = self._next()
        return ObjectResult(object=outcome, usage=self.usage, model=request.model)

    async def stream_text(self, request: GenerationRequest):
        if self.stream_chunks is None:
            async for chunk in super().stream_text(request):
                yield chunk
            return
        self.calls.append(request)
        for text in self.stream_chunks:
            await self._wait()
            if isinstance(text, BaseException):
                raise text
            yield StreamChunk(text=text)
        yield StreamChunk(done=True, usage=self.usage)


class RecordingSleep:
    """Zero-delay sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)

    @property
    def called(self) -> bool:
        return bool(self.delays)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_global_config():
    """Reset the global dispatch config and library log handlers around each test."""
    reset_dispatch_config()
    yield
    reset_dispatch_config()
    root = logging.getLogger(ROOT_LOGGER)
    root.handlers.clear()
    root.setLevel(logging.NOTSET)


@pytest.fixture
def registry() -> ProviderRegistry:
    """An empty, isolated provider registry."""
    return ProviderRegistry()


@pytest.fixture
def fake_provider(registry: ProviderRegistry) -> Callable[..., FakeAdapter]:
    """Register a FakeAdapter under a name and return it.

    Usage:
        adapter = fake_provider("alpha", ["hello"], native=True)
    """

    def _register(
        name: str,
        outcomes: Optional[Sequence[Any]] = None,
        *,
        native: bool = False,
        streaming: bool = False,
        temperature: bool = True,
        auth: AuthRequirement = AuthRequirement.NONE,
        **adapter_kwargs: Any,
    ) -> FakeAdapter:
        descriptor = make_descriptor(
            name, native=native, streaming=streaming, temperature=temperature, auth=auth
        )
        adapter = FakeAdapter(descriptor, outcomes, **adapter_kwargs)

        def factory(settings: AdapterSettings) -> FakeAdapter:
            return adapter

        registry.register(descriptor, factory)
        return adapter

    return _register


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_config() -> Callable[..., DispatchConfig]:
    """Build a DispatchConfig from (provider, model) pairs per role.

    Usage:
        config = make_config(
            {"primary": ("alpha", "a-1"), "fallback": ("beta", "b-1")},
            chains={"primary": ["fallback"]},
        )
    """

    def _make(
        roles: Dict[str, Tuple[str, str]],
        *,
        chains: Optional[Dict[str, Sequence[str]]] = None,
        **overrides: Any,
    ) -> DispatchConfig:
        config = DispatchConfig(
            roles={
                name: RoleConfig(role=name, provider=provider, model_id=model, max_output_tokens=1000)
                for name, (provider, model) in roles.items()
            },
            fallback_chains={name: tuple(chain) for name, chain in (chains or {}).items()},
            **overrides,
        )
        config.validate()
        return config

    return _make
