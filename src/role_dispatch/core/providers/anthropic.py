"""
Anthropic adapter.

Native structured output is produced by forcing a single tool call whose
input schema is the target schema; the tool input is the object.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from role_dispatch.core.errors import (
    AuthError,
    ConfigurationError,
    NoStructuredOutputError,
    SchemaValidationError,
)
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
)
from role_dispatch.core.providers.registry import AdapterSettings

logger = logging.getLogger(__name__)


ANTHROPIC_DESCRIPTOR = ProviderDescriptor(
    name="anthropic",
    auth_requirement=AuthRequirement.REQUIRED,
    capabilities=frozenset(
        {
            ProviderCapability.NATIVE_STRUCTURED_OUTPUT,
            ProviderCapability.STREAMING,
            ProviderCapability.TEMPERATURE_CONTROL,
            ProviderCapability.TOKEN_LIMIT,
        }
    ),
    display_name="Anthropic",
    api_key_env="ANTHROPIC_API_KEY",
    default_model="claude-sonnet-4-5",
)

# Property used when the target schema is not itself an object
_WRAPPED_VALUE_KEY = "value"


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API adapter.

    Attributes:
        api_key: Anthropic API key
        base_url: API base URL (for proxies)
        max_tokens_default: Output limit sent when the request has none;
            the Messages API requires one
    """

    descriptor = ANTHROPIC_DESCRIPTOR
    max_tokens_default: int = 4096

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        max_tokens_default: Optional[int] = None,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        if max_tokens_default:
            self.max_tokens_default = max_tokens_default
        self._client: Optional[Any] = client

    def _get_client(self) -> Any:
        """Get or create the Anthropic client (lazy initialization)."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError:
                raise ConfigurationError(
                    "anthropic package not installed. Install with: pip install anthropic",
                    provider=self.name,
                )

            if not self.api_key:
                raise AuthError(
                    "Anthropic API key not provided. Set ANTHROPIC_API_KEY or configure api_key.",
                    provider=self.name,
                )

            kwargs: Dict[str, Any] = {"api_key": self.api_key, "max_retries": 0}
            if self.base_url:
                kwargs["base_url"] = self.base_url

            self._client = AsyncAnthropic(**kwargs)

        return self._client

    def _convert_messages(self, messages: List[ChatMessage]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        """Convert ChatMessages to Anthropic format, extracting system messages.

        Anthropic requires the system prompt as a separate parameter.

        Returns:
            Tuple of (system_message, messages_list)
        """
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        for msg in messages:
            if msg.role == ChatRole.SYSTEM:
                system_parts.append(msg.content)
            else:
                converted.append({"role": msg.role.value, "content": msg.content or ""})

        return ("\n\n".join(system_parts) if system_parts else None), converted

    def _build_kwargs(self, request: GenerationRequest) -> Dict[str, Any]:
        system_message, messages = self._convert_messages(list(request.messages))
        params = self._request_params(request)
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": params.get("max_tokens") or self.max_tokens_default,
        }
        if "temperature" in params:
            kwargs["temperature"] = params["temperature"]
        if system_message:
            kwargs["system"] = system_message
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout
        return kwargs

    def _map_stop_reason(self, reason: Optional[str]) -> FinishReason:
        """Map Anthropic stop reason to FinishReason enum."""
        mapping = {
            "end_turn": FinishReason.STOP,
            "stop_sequence": FinishReason.STOP,
            "max_tokens": FinishReason.LENGTH,
            "tool_use": FinishReason.TOOL_CALL,
            "refusal": FinishReason.CONTENT_FILTER,
        }
        return mapping.get(reason or "", FinishReason.STOP)

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    async def generate_text(self, request: GenerationRequest) -> TextResult:
        client = self._get_client()
        try:
            response = await client.messages.create(**self._build_kwargs(request))
        except Exception as e:
            self._handle_api_error(e)

        text = ""
        for block in response.content:
            if block.type == "text":
                text += block.text

        return TextResult(
            text=text,
            usage=response.usage,
            finish_reason=self._map_stop_reason(response.stop_reason),
            model=response.model,
            raw=response,
        )

    async def generate_object(self, request: GenerationRequest) -> ObjectResult:
        """Generate an object by forcing a tool call with the schema as input."""
        if request.schema is None:
            raise ConfigurationError("generate_object requires a schema", provider=self.name)

        schema = request.schema
        input_schema = schema.json_schema
        wrapped = input_schema.get("type") not in (None, "object")
        if wrapped:
            input_schema = {
                "type": "object",
                "properties": {_WRAPPED_VALUE_KEY: input_schema},
                "required": [_WRAPPED_VALUE_KEY],
            }

        kwargs = self._build_kwargs(request)
        kwargs["tools"] = [
            {
                "name": request.object_name,
                "description": f"Respond with the {request.object_name} object.",
                "input_schema": input_schema,
            }
        ]
        kwargs["tool_choice"] = {"type": "tool", "name": request.object_name}

        client = self._get_client()
        try:
            response = await client.messages.create(**kwargs)
        except Exception as e:
            self._handle_api_error(e, structured=True)

        value: Any = None
        found = False
        for block in response.content:
            if block.type == "tool_use" and block.name == request.object_name:
                value = block.input
                found = True
                break

        if not found:
            text = "".join(block.text for block in response.content if block.type == "text")
            raise NoStructuredOutputError(
                "Model did not call the structured output tool",
                provider=self.name,
                raw_text=text or None,
            )

        if wrapped and isinstance(value, dict):
            value = value.get(_WRAPPED_VALUE_KEY)

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
            finish_reason=self._map_stop_reason(response.stop_reason),
            model=response.model,
        )

    async def stream_text(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Stream text deltas; the final chunk carries usage."""
        client = self._get_client()
        try:
            async with client.messages.stream(**self._build_kwargs(request)) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamChunk(text=text)
                final = await stream.get_final_message()
        except Exception as e:
            self._handle_api_error(e)

        yield StreamChunk(
            done=True,
            usage=final.usage,
            finish_reason=self._map_stop_reason(final.stop_reason),
        )


def create_anthropic_adapter(settings: AdapterSettings) -> AnthropicAdapter:
    return AnthropicAdapter(api_key=settings.api_key, base_url=settings.base_url)


__all__ = [
    "ANTHROPIC_DESCRIPTOR",
    "AnthropicAdapter",
    "create_anthropic_adapter",
]
