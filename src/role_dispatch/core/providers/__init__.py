"""
Provider adapters and the provider registry.

Adapter modules (openai, anthropic, local) import their vendor SDKs lazily
and are loaded by the registry on first use.
"""

from role_dispatch.core.providers.base import (
    AuthRequirement,
    ChatMessage,
    ChatRole,
    FinishReason,
    GenerationRequest,
    ObjectResult,
    ProviderAdapter,
    ProviderCapability,
    ProviderDescriptor,
    StreamChunk,
    TextResult,
    assistant,
    system,
    user,
)
from role_dispatch.core.providers.registry import (
    AdapterFactory,
    AdapterSettings,
    ProviderRegistry,
    build_default_registry,
)

__all__ = [
    # Contract
    "ProviderAdapter",
    "ProviderDescriptor",
    "ProviderCapability",
    "AuthRequirement",
    # Messages and results
    "ChatRole",
    "ChatMessage",
    "system",
    "user",
    "assistant",
    "GenerationRequest",
    "TextResult",
    "ObjectResult",
    "StreamChunk",
    "FinishReason",
    # Registry
    "AdapterFactory",
    "AdapterSettings",
    "ProviderRegistry",
    "build_default_registry",
]
