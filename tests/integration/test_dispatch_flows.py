"""
End-to-end dispatch flows through the real adapters.

The OpenAI, Anthropic and Ollama adapters are registered with mocked SDK
clients, so request translation, vendor error mapping, retry, fallback,
structured output routing, cancellation and telemetry are exercised
together without network access.
"""

import asyncio
import io
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from role_dispatch.core.dispatch import DispatchOptions, DispatchOrchestrator
from role_dispatch.core.errors import DispatchCancelledError, ErrorKind, ExhaustedError
from role_dispatch.core.llm_config import DispatchConfig, ProviderSettings, RoleConfig
from role_dispatch.core.logging_config import configure_logging
from role_dispatch.core.providers.anthropic import ANTHROPIC_DESCRIPTOR, AnthropicAdapter
from role_dispatch.core.providers.local import OLLAMA_DESCRIPTOR, LocalAdapter
from role_dispatch.core.providers.openai import OPENAI_DESCRIPTOR, OpenAIAdapter
from role_dispatch.core.providers.registry import ProviderRegistry
from role_dispatch.core.resilience import CancellationToken
from role_dispatch.core.structured.emulator import StructuredOutputPolicy
from role_dispatch.core.usage import InMemoryTelemetrySink, ModelPricing

pytestmark = pytest.mark.integration


# =============================================================================
# SDK doubles
# =============================================================================


class RateLimitError(Exception):
    def __init__(self, message="Rate limit reached", retry_after=None):
        super().__init__(message)
        self.message = message
        headers = {"retry-after": str(retry_after)} if retry_after is not None else {}
        self.response = httpx.Response(429, headers=headers)
        self.status_code = 429


class BadRequestError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message
        self.status_code = 400


class APIConnectionError(Exception):
    pass


def openai_reply(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content, refusal=None), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=100, completion_tokens=40, total_tokens=140),
        model="gpt-4.1",
    )


def anthropic_reply(text):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        stop_reason="end_turn",
        usage=SimpleNamespace(input_tokens=80, output_tokens=20),
        model="claude-sonnet-4-5",
    )


def ollama_reply(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage={"prompt_eval_count": 30, "eval_count": 10},
        model="llama3.2",
    )


class Backends:
    """Mocked SDK clients for the three built-in providers."""

    def __init__(self):
        self.anthropic = MagicMock()
        self.anthropic.messages.create = AsyncMock()
        self.openai = MagicMock()
        self.openai.chat.completions.create = AsyncMock()
        self.ollama = MagicMock()
        self.ollama.chat.completions.create = AsyncMock()

    def registry(self) -> ProviderRegistry:
        registry = ProviderRegistry()
        registry.register(
            ANTHROPIC_DESCRIPTOR, lambda s: AnthropicAdapter(api_key=s.api_key, client=self.anthropic)
        )
        registry.register(OPENAI_DESCRIPTOR, lambda s: OpenAIAdapter(api_key=s.api_key, client=self.openai))
        registry.register(OLLAMA_DESCRIPTOR, lambda s: LocalAdapter(base_url=s.base_url, client=self.ollama))
        return registry


@pytest.fixture
def backends():
    return Backends()


@pytest.fixture
def config():
    """primary=anthropic, research=openai, fallback=ollama."""
    return DispatchConfig(
        roles={
            "primary": RoleConfig(role="primary", provider="anthropic", model_id="claude-sonnet-4-5"),
            "research": RoleConfig(role="research", provider="openai", model_id="gpt-4.1"),
            "fallback": RoleConfig(role="fallback", provider="ollama", model_id="llama3.2"),
        },
        fallback_chains={"primary": ("research", "fallback"), "research": ("fallback",)},
        providers={
            "anthropic": ProviderSettings(api_key="sk-ant-test"),
            "openai": ProviderSettings(api_key="sk-test"),
        },
        pricing={"openai:gpt-4.1": ModelPricing(input=2.0, output=8.0)},
    )


async def no_sleep(delay):
    await asyncio.sleep(0)


# =============================================================================
# Flows
# =============================================================================


class TestFallbackFlow:
    """Retry on one vendor, fall back to another."""

    @pytest.mark.asyncio
    async def test_primary_serves(self, backends, config):
        """A healthy primary answers on the first attempt."""
        backends.anthropic.messages.create.return_value = anthropic_reply("From Claude")
        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)

        envelope = await orchestrator.dispatch("primary", "hi")

        assert envelope.text == "From Claude"
        assert envelope.usage.total_tokens == 100
        assert envelope.cost == 0.0
        kwargs = backends.anthropic.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-sonnet-4-5"
        backends.openai.chat.completions.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_primary_falls_back(self, backends, config):
        """Anthropic is retried on 429 and OpenAI serves the request."""
        backends.anthropic.messages.create.side_effect = RateLimitError(retry_after=3)
        backends.openai.chat.completions.create.return_value = openai_reply("From OpenAI")
        delays = []

        async def sleep(delay):
            delays.append(delay)

        sink = InMemoryTelemetrySink()
        orchestrator = DispatchOrchestrator(backends.registry(), config, telemetry_sink=sink, sleep=sleep)

        envelope = await orchestrator.dispatch("primary", "Summarize the report")

        assert envelope.text == "From OpenAI"
        assert envelope.provider_name == "openai"
        assert backends.anthropic.messages.create.await_count == 3
        assert delays == [3.0, 3.0]
        assert [a.error_kind for a in envelope.attempts] == [ErrorKind.RATE_LIMIT] * 3 + [None]
        assert envelope.usage.total_tokens == 140
        assert envelope.cost == pytest.approx(0.00052)
        assert sink.records[0].provider == "openai"
        assert sink.records[0].role == "research"

    @pytest.mark.asyncio
    async def test_local_last_resort(self, backends, config):
        """A rejected request on OpenAI and a bad Anthropic key end on Ollama."""
        backends.anthropic.messages.create.side_effect = type("AuthenticationError", (Exception,), {})("bad key")
        backends.openai.chat.completions.create.side_effect = BadRequestError("temperature out of range")
        backends.ollama.chat.completions.create.return_value = ollama_reply("From llama")

        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)
        envelope = await orchestrator.dispatch("primary", "hi")

        assert envelope.provider_name == "ollama"
        assert envelope.usage.input_tokens == 30
        assert [a.error_kind for a in envelope.attempts] == [ErrorKind.AUTH, ErrorKind.INVALID_REQUEST, None]

    @pytest.mark.asyncio
    async def test_everything_down(self, backends, config):
        """When every backend fails the attempt log explains each failure."""
        backends.anthropic.messages.create.side_effect = BadRequestError("bad")
        backends.openai.chat.completions.create.side_effect = BadRequestError("bad")
        backends.ollama.chat.completions.create.side_effect = APIConnectionError("Connection refused")
        config.max_retries = 1

        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)
        with pytest.raises(ExhaustedError) as exc_info:
            await orchestrator.dispatch("primary", "hi")

        error = exc_info.value
        assert [a.provider_name for a in error.attempts] == ["anthropic", "openai", "ollama", "ollama"]
        assert "ollama serve" in error.reasons[-1]


class TestStructuredFlow:
    """Native and emulated structured output across vendors."""

    SCHEMA = {
        "type": "object",
        "properties": {"verdict": {"type": "string"}, "confidence": {"type": "number"}},
        "required": ["verdict", "confidence"],
    }

    @pytest.mark.asyncio
    async def test_native_then_learned_emulation(self, backends, config):
        """A model rejecting response_format is emulated now and later."""
        backends.openai.chat.completions.create.side_effect = [
            BadRequestError("response_format json_schema is not supported with this model"),
            openai_reply('Here: {"verdict": "ok", "confidence": 0.9}'),
            openai_reply('```json\n{"verdict": "ok", "confidence": 0.8}\n```'),
        ]
        registry = backends.registry()
        orchestrator = DispatchOrchestrator(registry, config, sleep=no_sleep)

        first = await orchestrator.dispatch_structured("research", "Judge it", self.SCHEMA)
        second = await orchestrator.dispatch_structured("research", "Judge it", self.SCHEMA)

        assert first.object == {"verdict": "ok", "confidence": 0.9}
        assert second.object["confidence"] == 0.8
        assert registry.supports_native_structured("openai", "gpt-4.1") is False
        calls = backends.openai.chat.completions.create.call_args_list
        assert "response_format" in calls[0].kwargs
        assert "response_format" not in calls[2].kwargs

    @pytest.mark.asyncio
    async def test_emulated_repair_on_local_model(self, backends, config):
        """Ollama output missing a field is repaired by a corrective turn."""
        backends.ollama.chat.completions.create.side_effect = [
            ollama_reply('{"verdict": "ok"}'),
            ollama_reply('{"verdict": "ok", "confidence": 0.5}'),
        ]
        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)

        envelope = await orchestrator.dispatch_structured("fallback", "Judge it", self.SCHEMA)

        assert envelope.object == {"verdict": "ok", "confidence": 0.5}
        assert envelope.usage.input_tokens == 60
        second_messages = backends.ollama.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert "confidence" in second_messages[-1]["content"]

    @pytest.mark.asyncio
    async def test_lenient_deployment(self, backends, config):
        """A lenient deployment returns a partial object instead of failing."""
        backends.ollama.chat.completions.create.return_value = ollama_reply('{"verdict": "ok"}')
        config.structured_output_policy = StructuredOutputPolicy.LENIENT
        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)

        envelope = await orchestrator.dispatch_structured(
            "fallback", "Judge it", self.SCHEMA, DispatchOptions(max_retries=1)
        )

        assert envelope.partial is True
        assert envelope.object == {"verdict": "ok", "confidence": 0}


class TestCancellationFlow:
    """Caller cancellation across a live dispatch."""

    @pytest.mark.asyncio
    async def test_cancel_while_vendor_call_in_flight(self, backends, config):
        """Cancelling stops the in-flight call and no fallback is tried."""

        async def hang(**kwargs):
            await asyncio.sleep(10)

        backends.anthropic.messages.create.side_effect = hang
        token = CancellationToken()
        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)

        task = asyncio.ensure_future(
            orchestrator.dispatch("primary", "hi", DispatchOptions(cancellation_token=token))
        )
        await asyncio.sleep(0.01)
        token.cancel("user closed the tab")

        with pytest.raises(DispatchCancelledError):
            await task
        backends.openai.chat.completions.create.assert_not_awaited()


class TestLogCorrelation:
    """Structured logs carry the dispatch ID through retries and fallback."""

    @pytest.mark.asyncio
    async def test_logs_share_dispatch_id(self, backends, config):
        """Every record of one dispatch carries the envelope's dispatch ID."""
        stream = io.StringIO()
        configure_logging(level="DEBUG", format="structured", stream=stream)
        backends.anthropic.messages.create.side_effect = BadRequestError("bad")
        backends.openai.chat.completions.create.return_value = openai_reply("ok")

        orchestrator = DispatchOrchestrator(backends.registry(), config, sleep=no_sleep)
        envelope = await orchestrator.dispatch("primary", "hi")

        entries = [json.loads(line) for line in stream.getvalue().splitlines()]
        dispatch_entries = [e for e in entries if e["logger"] == "role_dispatch.core.dispatch"]
        assert dispatch_entries
        assert {e["dispatch_id"] for e in dispatch_entries} == {envelope.dispatch_id}
        assert any("Advancing past anthropic/claude-sonnet-4-5" in e["message"] for e in dispatch_entries)
