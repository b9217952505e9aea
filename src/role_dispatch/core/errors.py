"""
Error taxonomy for generation dispatch.

Adapters translate every vendor exception into exactly one of the classes
below. The orchestrator reads ``kind`` and ``retryable`` to decide whether
to retry the same candidate, advance to the next one, or stop.

Callers only ever see:
- ConfigurationError, raised before any attempt when a role or provider
  cannot be resolved
- ExhaustedError (or its DispatchCancelledError subclass), carrying the
  ordered attempt log
"""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

import httpx

if TYPE_CHECKING:
    from role_dispatch.core.dispatch import AttemptRecord


class ErrorKind(str, Enum):
    """Classification of a failed attempt.

    AUTH: Missing or rejected credential
    CONFIGURATION: Unknown role/provider or invalid settings
    RATE_LIMIT: Backend throttled the request
    TIMEOUT: Attempt exceeded its time budget
    NETWORK: Connection failure or 5xx from the backend
    INVALID_REQUEST: Backend rejected the request as malformed
    PROVIDER: Any other backend failure
    NO_STRUCTURED_OUTPUT: No JSON object could be recovered
    SCHEMA_VALIDATION: Recovered object does not satisfy the schema
    CANCELLED: Caller cancelled the dispatch
    EXHAUSTED: All candidates failed
    """

    AUTH = "auth"
    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    INVALID_REQUEST = "invalid_request"
    PROVIDER = "provider"
    NO_STRUCTURED_OUTPUT = "no_structured_output"
    SCHEMA_VALIDATION = "schema_validation"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT, ErrorKind.TIMEOUT, ErrorKind.NETWORK})


# =============================================================================
# Base
# =============================================================================


class DispatchError(Exception):
    """Base exception for dispatch operations.

    Attributes:
        message: Human-readable error description
        provider: Name of the provider that raised the error
        status_code: HTTP status code if applicable
    """

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.provider:
            result["provider"] = self.provider
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


# =============================================================================
# Resolution / credential errors
# =============================================================================


class ConfigurationError(DispatchError):
    """Unknown role, unregistered provider, or invalid configuration."""

    kind = ErrorKind.CONFIGURATION


class AuthError(DispatchError):
    """Missing or rejected credential. Never retried on the same candidate."""

    kind = ErrorKind.AUTH

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(message, provider=provider, status_code=401)


# =============================================================================
# Transient errors
# =============================================================================


class RateLimitError(DispatchError):
    """Rate limit exceeded.

    Attributes:
        retry_after: Seconds the backend asked us to wait, if provided
    """

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider=provider, status_code=429)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


class ProviderTimeoutError(DispatchError):
    """Attempt exceeded its per-attempt timeout or the overall deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(message, provider=provider)
        self.timeout_seconds = timeout_seconds


class NetworkError(DispatchError):
    """Connection failure or server-side (5xx) error."""

    kind = ErrorKind.NETWORK


# =============================================================================
# Non-transient backend errors
# =============================================================================


class InvalidRequestError(DispatchError):
    """Backend rejected the request (bad parameters, unknown model)."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = 400,
    ):
        super().__init__(message, provider=provider, status_code=status_code)


class ProviderError(DispatchError):
    """Backend failure outside the retryable set."""

    kind = ErrorKind.PROVIDER


# =============================================================================
# Structured output errors
# =============================================================================


class NoStructuredOutputError(DispatchError):
    """No JSON value could be recovered from a response.

    Attributes:
        raw_text: The response text that failed extraction
        unsupported: True when the backend rejected the native structured
            output request itself (tools/response_format unsupported)
    """

    kind = ErrorKind.NO_STRUCTURED_OUTPUT

    def __init__(
        self,
        message: str = "No structured output could be extracted from the response",
        *,
        provider: Optional[str] = None,
        raw_text: Optional[str] = None,
        unsupported: bool = False,
    ):
        super().__init__(message, provider=provider)
        self.raw_text = raw_text
        self.unsupported = unsupported


class SchemaValidationError(DispatchError):
    """Recovered object does not satisfy the requested schema.

    Attributes:
        missing_fields: Required fields absent from the object
        empty_fields: Required fields present but empty
        errors: Other violations as human-readable strings
    """

    kind = ErrorKind.SCHEMA_VALIDATION

    def __init__(
        self,
        message: str = "Generated object failed schema validation",
        *,
        provider: Optional[str] = None,
        missing_fields: Sequence[str] = (),
        empty_fields: Sequence[str] = (),
        errors: Sequence[str] = (),
    ):
        super().__init__(message, provider=provider)
        self.missing_fields = list(missing_fields)
        self.empty_fields = list(empty_fields)
        self.errors = list(errors)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["missing_fields"] = self.missing_fields
        result["empty_fields"] = self.empty_fields
        if self.errors:
            result["errors"] = self.errors
        return result


# =============================================================================
# Terminal errors
# =============================================================================


class ExhaustedError(DispatchError):
    """Every candidate for a role failed.

    Attributes:
        role: Role that was being served
        attempts: Ordered attempt log across all candidates
    """

    kind = ErrorKind.EXHAUSTED

    def __init__(
        self,
        message: str,
        *,
        role: Optional[str] = None,
        attempts: Sequence["AttemptRecord"] = (),
    ):
        super().__init__(message)
        self.role = role
        self.attempts = list(attempts)

    @property
    def reasons(self) -> List[str]:
        """One line per failed attempt, in attempt order."""
        return [
            f"{a.provider_name}/{a.model} attempt {a.attempt_number}: "
            f"{a.error_kind.value if a.error_kind else 'unknown'}: {a.message}"
            for a in self.attempts
        ]

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["role"] = self.role
        result["attempts"] = [a.to_dict() for a in self.attempts]
        return result


class DispatchCancelledError(ExhaustedError):
    """The caller cancelled the dispatch. No further candidates are tried."""

    kind = ErrorKind.CANCELLED


# =============================================================================
# Helpers
# =============================================================================


_STATUS_RE = re.compile(r"\b(?:status(?:\s*code)?[:=\s]+)?([45]\d\d)\b")


def extract_error_message(error: BaseException) -> str:
    """Pull the most specific message out of a vendor exception.

    Vendor SDKs nest the useful text in a variety of places
    (``body.error.message``, ``error.message``, ``message``). Falls back to
    ``str(error)``.
    """
    body = getattr(error, "body", None)
    if isinstance(body, dict):
        nested = body.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("message"), str):
            return nested["message"]
        if isinstance(body.get("message"), str):
            return body["message"]

    nested_error = getattr(error, "error", None)
    if isinstance(nested_error, dict) and isinstance(nested_error.get("message"), str):
        return nested_error["message"]

    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message

    return str(error) or type(error).__name__


def extract_status_code(error: BaseException) -> Optional[int]:
    """Return the HTTP status carried by a vendor exception, if any."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def classify_exception(error: BaseException, *, provider: Optional[str] = None) -> DispatchError:
    """Map an arbitrary exception onto the dispatch taxonomy.

    Used for exceptions that escape an adapter unmapped. Matching follows
    the usual transient signals (timeouts, rate limits, connection
    failures, 5xx) and treats everything else as a non-retryable
    ProviderError.
    """
    if isinstance(error, DispatchError):
        return error

    message = extract_error_message(error)
    lowered = message.lower()
    status = extract_status_code(error)
    if status is None:
        match = _STATUS_RE.search(message)
        if match and ("status" in lowered or "http" in lowered or "error" in lowered):
            status = int(match.group(1))

    if status in (401, 403) or "unauthorized" in lowered or "not logged in" in lowered:
        return AuthError(message, provider=provider)
    if isinstance(error, (TimeoutError, httpx.TimeoutException)) or "timeout" in lowered or "timed out" in lowered:
        return ProviderTimeoutError(message, provider=provider)
    if status == 429 or "rate limit" in lowered or "rate_limit" in lowered or "overloaded" in lowered:
        return RateLimitError(message, provider=provider)
    if isinstance(error, (ConnectionError, httpx.TransportError)) or any(
        marker in lowered
        for marker in ("connection reset", "connection refused", "network error", "service unavailable")
    ):
        return NetworkError(message, provider=provider, status_code=status)
    if status is not None and status >= 500:
        return NetworkError(message, provider=provider, status_code=status)
    return ProviderError(message, provider=provider, status_code=status)


__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "DispatchError",
    "ConfigurationError",
    "AuthError",
    "RateLimitError",
    "ProviderTimeoutError",
    "NetworkError",
    "InvalidRequestError",
    "ProviderError",
    "NoStructuredOutputError",
    "SchemaValidationError",
    "ExhaustedError",
    "DispatchCancelledError",
    "extract_error_message",
    "extract_status_code",
    "classify_exception",
]
