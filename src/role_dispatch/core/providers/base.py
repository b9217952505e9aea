"""
Base provider abstractions for role-dispatch.

Every backend is wrapped in a ProviderAdapter that satisfies one fixed
contract: generate text, generate a schema-constrained object, and stream
text. Capabilities are declared up front on a ProviderDescriptor so the
orchestrator can route around what a backend cannot do instead of
discovering it at call time.

Design principles:
- Frozen dataclasses for immutability
- Enum-based capabilities for type-safe routing
- Adapters never retry; every vendor error is mapped to a DispatchError
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, FrozenSet, List, NoReturn, Optional, Sequence

from role_dispatch.core.errors import (
    AuthError,
    DispatchError,
    InvalidRequestError,
    NetworkError,
    NoStructuredOutputError,
    ProviderTimeoutError,
    RateLimitError,
    classify_exception,
    extract_error_message,
    extract_status_code,
)

if TYPE_CHECKING:
    from role_dispatch.core.structured.schema import ObjectSchema


# =============================================================================
# Enums
# =============================================================================


class ProviderCapability(Enum):
    """
    Feature flags a provider declares at registration.

    Values:
        NATIVE_STRUCTURED_OUTPUT: Backend can be constrained to a JSON schema
        STREAMING: Backend streams tokens incrementally
        TEMPERATURE_CONTROL: Backend honours the temperature parameter
        TOKEN_LIMIT: Backend honours a max output token limit
    """

    NATIVE_STRUCTURED_OUTPUT = "native_structured_output"
    STREAMING = "streaming"
    TEMPERATURE_CONTROL = "temperature_control"
    TOKEN_LIMIT = "token_limit"


class AuthRequirement(str, Enum):
    """
    How an adapter obtains credentials.

    Values:
        NONE: No credential needed (local servers)
        REQUIRED: Construction fails without a credential
        OPTIONAL_WITH_FALLBACK: A placeholder credential is used when none
            is configured (self-hosted OpenAI-compatible endpoints)
    """

    NONE = "none"
    REQUIRED = "required"
    OPTIONAL_WITH_FALLBACK = "optional_with_fallback"


class ChatRole(str, Enum):
    """Role of a message in a chat conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class FinishReason(str, Enum):
    """Reason why the model stopped generating.

    STOP: Natural completion
    LENGTH: Hit max_tokens limit
    TOOL_CALL: Model produced a tool call (native structured output)
    CONTENT_FILTER: Filtered due to content policy
    ERROR: Generation error occurred
    """

    STOP = "stop"
    LENGTH = "length"
    TOOL_CALL = "tool_call"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


# =============================================================================
# Descriptor
# =============================================================================


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    Static description of a provider, immutable once registered.

    Attributes:
        name: Canonical provider identifier (e.g., "openai")
        auth_requirement: How credentials are obtained
        capabilities: Capabilities the adapter declares
        display_name: Human-friendly name for diagnostics
        api_key_env: Vendor environment variable holding the credential
        default_model: Model used when a role omits one
        default_base_url: Endpoint used when neither role nor provider
            settings supply one
    """

    name: str
    auth_requirement: AuthRequirement = AuthRequirement.REQUIRED
    capabilities: FrozenSet[ProviderCapability] = field(default_factory=frozenset)
    display_name: Optional[str] = None
    api_key_env: Optional[str] = None
    default_model: Optional[str] = None
    default_base_url: Optional[str] = None

    def supports(self, capability: ProviderCapability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name or self.name,
            "auth_requirement": self.auth_requirement.value,
            "capabilities": sorted(cap.value for cap in self.capabilities),
            "default_model": self.default_model,
            "default_base_url": self.default_base_url,
        }


# =============================================================================
# Messages and requests
# =============================================================================


@dataclass(frozen=True)
class ChatMessage:
    """A message in a chat conversation."""

    role: ChatRole
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=ChatRole(data["role"]), content=data.get("content") or "")


def system(content: str) -> ChatMessage:
    return ChatMessage(ChatRole.SYSTEM, content)


def user(content: str) -> ChatMessage:
    return ChatMessage(ChatRole.USER, content)


def assistant(content: str) -> ChatMessage:
    return ChatMessage(ChatRole.ASSISTANT, content)


@dataclass(frozen=True)
class GenerationRequest:
    """
    Normalized request handed to an adapter for a single call.

    Attributes:
        messages: Ordered conversation
        model: Model identifier to call
        max_tokens: Maximum output tokens (ignored without TOKEN_LIMIT)
        temperature: Sampling temperature (ignored without TEMPERATURE_CONTROL)
        schema: Target object schema for generate_object
        object_name: Name used for the tool/response format
        timeout: Per-call timeout in seconds, passed through to the SDK
    """

    messages: Sequence[ChatMessage]
    model: str
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    schema: Optional["ObjectSchema"] = None
    object_name: str = "generated_object"
    timeout: Optional[float] = None

    def with_messages(self, messages: Sequence[ChatMessage]) -> "GenerationRequest":
        return replace(self, messages=tuple(messages))

    def with_temperature(self, temperature: Optional[float]) -> "GenerationRequest":
        return replace(self, temperature=temperature)

    @property
    def system_prompt(self) -> Optional[str]:
        """Concatenated content of all system messages, or None."""
        parts = [m.content for m in self.messages if m.role == ChatRole.SYSTEM]
        return "\n\n".join(parts) if parts else None

    @property
    def conversation(self) -> List[ChatMessage]:
        """Non-system messages in order."""
        return [m for m in self.messages if m.role != ChatRole.SYSTEM]


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class TextResult:
    """
    Result of generate_text.

    ``usage`` is the backend's own usage object; the orchestrator
    normalizes it. ``raw`` holds the untouched SDK response.
    """

    text: str
    usage: Any = None
    finish_reason: FinishReason = FinishReason.STOP
    model: Optional[str] = None
    raw: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class ObjectResult:
    """Result of generate_object, already validated against the schema."""

    object: Any
    usage: Any = None
    finish_reason: FinishReason = FinishReason.STOP
    model: Optional[str] = None
    partial: bool = False


@dataclass(frozen=True)
class StreamChunk:
    """
    A piece of streamed text.

    The final chunk has ``done=True`` and may carry usage and a finish
    reason. For structured streams it also carries the validated
    ``object`` and the ``partial`` flag.
    """

    text: str = ""
    done: bool = False
    usage: Any = None
    finish_reason: Optional[FinishReason] = None
    object: Any = None
    partial: bool = False


# =============================================================================
# Adapter contract
# =============================================================================


class ProviderAdapter(ABC):
    """
    Abstract base class for provider adapters.

    Subclasses set ``descriptor`` and implement ``generate_text``.
    Adapters declaring NATIVE_STRUCTURED_OUTPUT override
    ``generate_object``; adapters declaring STREAMING override
    ``stream_text``.

    Adapters must not retry. Every failure leaves as a DispatchError.
    """

    descriptor: ProviderDescriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    def supports(self, capability: ProviderCapability) -> bool:
        return self.descriptor.supports(capability)

    @abstractmethod
    async def generate_text(self, request: GenerationRequest) -> TextResult:
        """Generate free text for the request."""

    async def generate_object(self, request: GenerationRequest) -> ObjectResult:
        """Generate an object constrained to ``request.schema``.

        Raises:
            NoStructuredOutputError: Always, for adapters without native
                structured output.
        """
        raise NoStructuredOutputError(
            f"Provider '{self.name}' does not support native structured output",
            provider=self.name,
            unsupported=True,
        )

    async def stream_text(self, request: GenerationRequest) -> AsyncIterator[StreamChunk]:
        """Stream text for the request.

        Default implementation buffers a full generate_text call and emits
        it as a single final chunk.
        """
        result = await self.generate_text(request)
        yield StreamChunk(
            text=result.text,
            done=True,
            usage=result.usage,
            finish_reason=result.finish_reason,
        )

    def _request_params(self, request: GenerationRequest) -> Dict[str, Any]:
        """Sampling parameters the backend honours, per capability flags."""
        params: Dict[str, Any] = {}
        if request.max_tokens is not None and self.supports(ProviderCapability.TOKEN_LIMIT):
            params["max_tokens"] = request.max_tokens
        if request.temperature is not None and self.supports(ProviderCapability.TEMPERATURE_CONTROL):
            params["temperature"] = request.temperature
        return params

    def _handle_api_error(self, error: Exception, *, structured: bool = False) -> NoReturn:
        """Convert a vendor SDK exception into a DispatchError and raise it.

        The OpenAI and Anthropic SDKs share exception class names, so
        mapping is by class name first and message second.

        Args:
            error: The exception raised by the SDK call
            structured: The call was a native structured output request;
                rejections of the tool/response_format itself are reported
                as NoStructuredOutputError(unsupported=True)
        """
        if isinstance(error, DispatchError):
            raise error

        message = extract_error_message(error)
        lowered = message.lower()
        error_type = type(error).__name__
        status = extract_status_code(error)

        if error_type == "RateLimitError" or status == 429:
            raise RateLimitError(message, provider=self.name, retry_after=_retry_after(error)) from error

        if error_type in ("AuthenticationError", "PermissionDeniedError") or status in (401, 403):
            raise AuthError(message, provider=self.name) from error

        if error_type == "APITimeoutError":
            raise ProviderTimeoutError(message, provider=self.name, timeout_seconds=None) from error

        if error_type == "APIConnectionError":
            raise NetworkError(message, provider=self.name) from error

        if error_type in ("BadRequestError", "UnprocessableEntityError") or status in (400, 422):
            if structured and any(marker in lowered for marker in _STRUCTURED_REJECTION_MARKERS):
                raise NoStructuredOutputError(message, provider=self.name, unsupported=True) from error
            raise InvalidRequestError(message, provider=self.name, status_code=status or 400) from error

        if error_type == "NotFoundError" or status == 404:
            raise InvalidRequestError(message, provider=self.name, status_code=404) from error

        if error_type in ("InternalServerError", "OverloadedError") or (status is not None and status >= 500):
            raise NetworkError(message, provider=self.name, status_code=status) from error

        raise classify_exception(error, provider=self.name) from error


_STRUCTURED_REJECTION_MARKERS = (
    "response_format",
    "json_schema",
    "tool_choice",
    "tools",
    "tool use",
    "function calling",
    "not support",
)


def _retry_after(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "ProviderCapability",
    "AuthRequirement",
    "ChatRole",
    "FinishReason",
    "ProviderDescriptor",
    "ChatMessage",
    "system",
    "user",
    "assistant",
    "GenerationRequest",
    "TextResult",
    "ObjectResult",
    "StreamChunk",
    "ProviderAdapter",
]
