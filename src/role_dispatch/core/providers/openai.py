"""
OpenAI and OpenAI-compatible adapters.

OpenAIAdapter talks to the OpenAI API and produces structured output
natively through a JSON-schema ``response_format``. The compatible variant
targets any server speaking the chat completions protocol (vLLM, LM
Studio, OpenRouter-style gateways) and relies on emulation for structured
output.

Example:
    adapter = OpenAIAdapter(api_key="sk-...")
    result = await adapter.generate_text(GenerationRequest(
        messages=[user("Hello!")], model="gpt-4.1",
    ))
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, AsyncIterator, Dict, Optional

from role_dispatch.core.errors import (
    AuthError,
    ConfigurationError,
    NoStructuredOutputError,
    SchemaValidationError,
)
from role_dispatch.core.providers.base import (
    AuthRequirement,
    FinishReason,
    GenerationRequest,
    ObjectResult,
    ProviderAdapter,
    ProviderCapability,
    ProviderDescriptor,
    StreamChunk,
    TextResult,
)
from role_dispatch.core.providers.registry import AdapterSettings

logger = logging.getLogger(__name__)


OPENAI_DESCRIPTOR = ProviderDescriptor(
    name="openai",
    auth_requirement=AuthRequirement.REQUIRED,
    capabilities=frozenset(
        {
            ProviderCapability.NATIVE_STRUCTURED_OUTPUT,
            ProviderCapability.STREAMING,
            ProviderCapability.TEMPERATURE_CONTROL,
            ProviderCapability.TOKEN_LIMIT,
        }
    ),
    display_name="OpenAI",
    api_key_env="OPENAI_API_KEY",
    default_model="gpt-4.1",
)

OPENAI_COMPATIBLE_DESCRIPTOR = ProviderDescriptor(
    name="openai-compatible",
    auth_requirement=AuthRequirement.OPTIONAL_WITH_FALLBACK,
    capabilities=frozenset(
        {
            ProviderCapability.STREAMING,
            ProviderCapability.TEMPERATURE_CONTROL,
            ProviderCapability.TOKEN_LIMIT,
        }
    ),
    display_name="OpenAI-compatible endpoint",
)

_SCHEMA_NAME_RE = re.compile(r"[^a-zA-Z0-9_-]")

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALL,
    "function_call": FinishReason.TOOL_CALL,
    "content_filter": FinishReason.CONTENT_FILTER,
}


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions adapter.

    Attributes:
        api_key: OpenAI API key
        base_url: API base URL (None uses the SDK default)
        organization: Optional organization ID
    """

    descriptor = OPENAI_DESCRIPTOR
    #: Name of the output token limit parameter
    token_limit_param = "max_completion_tokens"
    #: Ask the server for a usage chunk at the end of a stream
    stream_usage = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        """Initialize the adapter.

        Args:
            api_key: Resolved credential
            base_url: Endpoint override
            organization: Optional organization ID
            client: Pre-built AsyncOpenAI client (tests, custom transports)
        """
        self.api_key = api_key
        self.base_url = base_url
        self.organization = organization
        self._client: Optional[Any] = client

    def _get_client(self) -> Any:
        """Get or create the OpenAI client (lazy initialization)."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ConfigurationError(
                    "openai package not installed. Install with: pip install openai",
                    provider=self.name,
                )

            if not self.api_key:
                raise AuthError(f"API key not provided for provider '{self.name}'.", provider=self.name)

            kwargs: Dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            if self.organization:
                kwargs["organization"] = self.organization
            self._client = AsyncOpenAI(**kwargs)

        return self._client

    def _build_kwargs(self, request: GenerationRequest) -> Dict[str, Any]:
        params = self._request_params(request)
        if "max_tokens" in params:
            params[self.token_limit_param] = params.pop("max_tokens")
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [message.to_dict() for message in request.messages],
            **params,
        }
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout
        return kwargs

    def _map_finish_reason(self, reason: Optional[str]) -> FinishReason:
        """Map OpenAI finish reason to FinishReason enum."""
        if reason is None:
            return FinishReason.STOP
        return _FINISH_REASONS.get(reason, FinishReason.STOP)

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def generate_text(self, request: GenerationRequest) -> TextResult:
        client = self._get_client()
        try:
            response = await client.chat.completions.create(**self._build_kwargs(request))
        except Exception as e:
            self._handle_api_error(e)

        choice = response.choices[0]
        return TextResult(
            text=choice.message.content or "",
            usage=response.usage,
            finish_reason=self._map_finish_reason(choice.finish_reason),
            model=response.model,
            raw=response,
        )

    async def generate_object(self, request: GenerationRequest) -> ObjectResult:
        """Generate an object using a JSON-schema response_format."""
        if not self.supports(ProviderCapability.NATIVE_STRUCTURED_OUTPUT):
            return await super().generate_object(request)
        if request.schema is None:
            raise ConfigurationError("generate_object requires a schema", provider=self.name)

        schema = request.schema
        kwargs = self._build_kwargs(request)
        kwargs["response_format"] = {
            "type": "json_schema",
            "json_schema": {
                "name": _SCHEMA_NAME_RE.sub("_", request.object_name)[:64] or "generated_object",
                "schema": schema.json_schema,
                "strict": False,
            },
        }

        client = self._get_client()
        try:
            response = await client.chat.completions.create(**kwargs)
        except Exception as e:
            self._handle_api_error(e, structured=True)

        choice = response.choices[0]
        content = choice.message.content
        if not content:
            refusal = getattr(choice.message, "refusal", None)
            raise NoStructuredOutputError(
                f"Model returned no structured content{': ' + refusal if refusal else ''}",
                provider=self.name,
            )

        try:
            value = json.loads(content)
        except json.JSONDecodeError as exc:
            raise NoStructuredOutputError(
                f"Structured response was not valid JSON: {exc}",
                provider=self.name,
                raw_text=content,
            ) from exc

        report = schema.validate(value)
        if not report.valid:
            raise SchemaValidationError(
                f"Structured response failed validation: {report.summary()}",
                provider=self.name,
                missing_fields=report.missing,
                empty_fields=report.empty,
                errors=report.errors,
            )

        return ObjectResult(
            object=schema.finalize(value),
            usage=response.usage,
            finish_reason=self._map_finish_reason(choice.finish_reason),
            model=response.model,
        )

    async def stream_text(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Stream chat completion tokens."""
        if not self.supports(ProviderCapability.STREAMING):
            async for chunk in super().stream_text(request):
                yield chunk
            return

        client = self._get_client()
        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True
        if self.stream_usage:
            kwargs["stream_options"] = {"include_usage": True}

        usage = None
        finish_reason: Optional[FinishReason] = None
        try:
            stream = await client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = chunk.usage
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = self._map_finish_reason(choice.finish_reason)
                if choice.delta.content:
                    yield StreamChunk(text=choice.delta.content)
        except Exception as e:
            self._handle_api_error(e)

        yield StreamChunk(done=True, usage=usage, finish_reason=finish_reason or FinishReason.STOP)


class OpenAICompatibleAdapter(OpenAIAdapter):
    """Adapter for self-hosted or third-party chat completions servers.

    A base URL is required. Without a configured credential the adapter
    sends a placeholder key, which such servers typically ignore.
    """

    descriptor = OPENAI_COMPATIBLE_DESCRIPTOR
    token_limit_param = "max_tokens"
    stream_usage = False
    placeholder_api_key = "not-needed"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        client: Optional[Any] = None,
    ):
        if not base_url and client is None:
            raise ConfigurationError(
                f"Provider '{self.descriptor.name}' requires a base_url",
                provider=self.descriptor.name,
            )
        super().__init__(
            api_key=api_key or self.placeholder_api_key,
            base_url=base_url,
            organization=organization,
            client=client,
        )


def create_openai_adapter(settings: AdapterSettings) -> OpenAIAdapter:
    return OpenAIAdapter(api_key=settings.api_key, base_url=settings.base_url)


def create_openai_compatible_adapter(settings: AdapterSettings) -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter(api_key=settings.api_key, base_url=settings.base_url)


__all__ = [
    "OPENAI_DESCRIPTOR",
    "OPENAI_COMPATIBLE_DESCRIPTOR",
    "OpenAIAdapter",
    "OpenAICompatibleAdapter",
    "create_openai_adapter",
    "create_openai_compatible_adapter",
]
