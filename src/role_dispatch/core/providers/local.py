"""
Local model adapter (Ollama or any llama.cpp-style OpenAI-compatible server).

Local servers need no credential, and their structured output support
varies by model, so structured requests always go through emulation.
"""

from __future__ import annotations

from typing import Any, Optional

from role_dispatch.core.errors import InvalidRequestError, NetworkError
from role_dispatch.core.providers.base import (
    AuthRequirement,
    GenerationRequest,
    ProviderCapability,
    ProviderDescriptor,
    TextResult,
)
from role_dispatch.core.providers.openai import OpenAICompatibleAdapter
from role_dispatch.core.providers.registry import AdapterSettings

DEFAULT_OLLAMA_URL = "http://localhost:11434/v1"

OLLAMA_DESCRIPTOR = ProviderDescriptor(
    name="ollama",
    auth_requirement=AuthRequirement.NONE,
    capabilities=frozenset(
        {
            ProviderCapability.TEMPERATURE_CONTROL,
            ProviderCapability.TOKEN_LIMIT,
        }
    ),
    display_name="Ollama (local)",
    default_model="llama3.2",
    default_base_url=DEFAULT_OLLAMA_URL,
)


class LocalAdapter(OpenAICompatibleAdapter):
    """Local LLM adapter using Ollama's OpenAI-compatible endpoint.

    Example:
        # Using Ollama (default)
        adapter = LocalAdapter()

        # Custom endpoint
        adapter = LocalAdapter(base_url="http://localhost:8080/v1")
    """

    descriptor = OLLAMA_DESCRIPTOR
    placeholder_api_key = "ollama"  # Ollama accepts any key

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        super().__init__(api_key=api_key, base_url=base_url or DEFAULT_OLLAMA_URL, client=client)

    async def generate_text(self, request: GenerationRequest) -> TextResult:
        try:
            return await super().generate_text(request)
        except NetworkError as exc:
            if exc.status_code is not None:
                raise
            raise NetworkError(
                f"Cannot connect to local server at {self.base_url}. Ensure Ollama is running: ollama serve",
                provider=self.name,
            ) from exc
        except InvalidRequestError as exc:
            if exc.status_code != 404 and "not found" not in exc.message.lower():
                raise
            raise InvalidRequestError(
                f"Model '{request.model}' not found. Pull it first: ollama pull {request.model}",
                provider=self.name,
                status_code=404,
            ) from exc


def create_ollama_adapter(settings: AdapterSettings) -> LocalAdapter:
    return LocalAdapter(api_key=settings.api_key, base_url=settings.base_url)


__all__ = [
    "DEFAULT_OLLAMA_URL",
    "OLLAMA_DESCRIPTOR",
    "LocalAdapter",
    "create_ollama_adapter",
]
