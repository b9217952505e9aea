"""
Dispatch orchestration.

The orchestrator serves a logical role by walking the role's candidate
list and driving each candidate through a small state machine:

    SELECT -> ATTEMPT -> SUCCESS
                      -> RETRY    (transient error, same candidate, backoff)
                      -> ADVANCE  (anything else, next candidate)
    no candidates left -> EXHAUSTED

Structured requests go to the adapter's native ``generate_object`` when
the provider/model supports it and through the StructuredOutputEmulator
otherwise. All provider calls of one attempt share a budget: the tighter
of the per-attempt timeout and the remaining overall deadline. Each call
races the caller's CancellationToken.

Example:
    registry = build_default_registry()
    orchestrator = DispatchOrchestrator(registry, load_dispatch_config())
    envelope = await orchestrator.dispatch("primary", [user("Summarize ...")])
    print(envelope.text, envelope.usage.total_tokens)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    TypeVar,
    Union,
)

from role_dispatch.core.context import dispatch_context, generate_dispatch_id
from role_dispatch.core.errors import (
    ConfigurationError,
    DispatchCancelledError,
    DispatchError,
    ErrorKind,
    ExhaustedError,
    NoStructuredOutputError,
    ProviderTimeoutError,
    classify_exception,
)
from role_dispatch.core.llm_config import (
    DispatchConfig,
    get_dispatch_config,
    normalize_role,
    resolve_adapter_settings,
)
from role_dispatch.core.providers.base import (
    ChatMessage,
    ChatRole,
    FinishReason,
    GenerationRequest,
    ProviderAdapter,
    ProviderCapability,
    StreamChunk,
    TextResult,
    system,
    user,
)
from role_dispatch.core.providers.registry import ProviderRegistry
from role_dispatch.core.resilience import (
    CancellationToken,
    Deadline,
    OperationCancelled,
    SleepFunc,
    TimeoutException,
    cancellable_sleep,
    run_cancellable,
)
from role_dispatch.core.roles import Candidate, RoleResolver
from role_dispatch.core.structured.emulator import StructuredOutputEmulator
from role_dispatch.core.structured.schema import ObjectSchema, SchemaLike
from role_dispatch.core.usage import (
    TelemetrySink,
    TokenUsage,
    UsageRecord,
    emit_usage,
    normalize_usage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MessagesLike = Union[str, Sequence[Union[ChatMessage, Mapping[str, Any]]]]


# =============================================================================
# Types
# =============================================================================


class DispatchState(str, Enum):
    """States of the per-dispatch state machine."""

    SELECT = "select"
    ATTEMPT = "attempt"
    SUCCESS = "success"
    RETRY = "retry"
    ADVANCE = "advance"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class AttemptRecord:
    """One provider attempt within a dispatch.

    Attributes:
        provider_name: Provider that was called
        model: Model that was called
        role: Role whose configuration produced the candidate
        attempt_number: 1-based attempt number on this candidate
        error_kind: Failure classification (None for the successful attempt)
        retryable: Whether the failure was eligible for retry
        latency: Seconds spent on the attempt
        message: Error message, or "ok"
        is_retry: True for attempts after the first on a candidate
    """

    provider_name: str
    model: str
    role: str
    attempt_number: int
    error_kind: Optional[ErrorKind]
    retryable: bool
    latency: float
    message: str
    is_retry: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_name,
            "model": self.model,
            "role": self.role,
            "attempt_number": self.attempt_number,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "retryable": self.retryable,
            "latency": round(self.latency, 4),
            "message": self.message,
            "is_retry": self.is_retry,
        }


@dataclass
class DispatchOptions:
    """Per-call options. Unset values fall back to the dispatch configuration.

    Attributes:
        temperature: Overrides the role temperature
        max_tokens: Overrides the role output token limit
        cancellation_token: Caller-owned cancellation signal
        timeout_per_attempt: Per-attempt timeout in seconds
        deadline: Overall dispatch deadline in seconds
        max_retries: Corrective retries for emulated structured output
        object_name: Name of the generated object (tool/response format);
            defaults to the schema title, the model name, or
            "generated_object"
        command_name: Caller label attached to the usage record
    """

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    cancellation_token: Optional[CancellationToken] = None
    timeout_per_attempt: Optional[float] = None
    deadline: Optional[float] = None
    max_retries: Optional[int] = None
    object_name: Optional[str] = None
    command_name: Optional[str] = None


@dataclass
class RequestEnvelope:
    """A caller request bound to one role, with options resolved."""

    role: str
    messages: List[ChatMessage]
    schema: Optional[ObjectSchema] = None
    object_name: str = "generated_object"
    max_retries: int = 2
    timeout_per_attempt: Optional[float] = None
    deadline: Optional[float] = None
    cancellation_token: Optional[CancellationToken] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    command_name: Optional[str] = None

    def generation_request(self, candidate: Candidate) -> GenerationRequest:
        """Adapter request for one candidate. Caller overrides win over role settings."""
        return GenerationRequest(
            messages=tuple(self.messages),
            model=candidate.model_id,
            max_tokens=self.max_tokens if self.max_tokens is not None else candidate.max_tokens,
            temperature=self.temperature if self.temperature is not None else candidate.temperature,
            schema=self.schema,
            object_name=self.object_name,
        )


@dataclass
class ResponseEnvelope:
    """Result of a successful dispatch."""

    usage: TokenUsage
    provider_name: str
    model: str
    role: str
    finish_reason: FinishReason = FinishReason.STOP
    text: Optional[str] = None
    object: Any = None
    partial: bool = False
    attempts: List[AttemptRecord] = field(default_factory=list)
    cost: float = 0.0
    currency: str = "USD"
    dispatch_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        value = self.object
        if hasattr(value, "model_dump"):
            value = value.model_dump()
        result: Dict[str, Any] = {
            "provider": self.provider_name,
            "model": self.model,
            "role": self.role,
            "finish_reason": self.finish_reason.value,
            "usage": self.usage.to_dict(),
            "cost": self.cost,
            "currency": self.currency,
            "partial": self.partial,
            "dispatch_id": self.dispatch_id,
            "attempts": [a.to_dict() for a in self.attempts],
        }
        if self.text is not None:
            result["text"] = self.text
        if self.object is not None:
            result["object"] = value
        return result


@dataclass(frozen=True)
class _Outcome:
    text: Optional[str] = None
    object: Any = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: FinishReason = FinishReason.STOP
    model: Optional[str] = None
    partial: bool = False


# =============================================================================
# Message helpers
# =============================================================================


def coerce_messages(messages: MessagesLike) -> List[ChatMessage]:
    """Accept a prompt string, ChatMessages, or {"role", "content"} dicts."""
    if isinstance(messages, str):
        return [user(messages)]
    result: List[ChatMessage] = []
    for message in messages:
        if isinstance(message, ChatMessage):
            result.append(message)
        elif isinstance(message, Mapping):
            try:
                result.append(ChatMessage.from_dict(dict(message)))
            except (KeyError, ValueError) as exc:
                raise ConfigurationError(f"Invalid message {message!r}: {exc}") from exc
        else:
            raise ConfigurationError(f"Unsupported message type: {type(message).__name__}")
    if not result:
        raise ConfigurationError("At least one message is required")
    return result


def apply_response_language(messages: Sequence[ChatMessage], language: Optional[str]) -> List[ChatMessage]:
    """Append the response language directive to the first system message."""
    result = list(messages)
    if not language:
        return result
    directive = f"Always respond in {language}."
    for index, message in enumerate(result):
        if message.role == ChatRole.SYSTEM:
            result[index] = ChatMessage(ChatRole.SYSTEM, f"{message.content}\n\n{directive}")
            return result
    return [system(directive)] + result


async def _next_chunk(stream: AsyncIterator[StreamChunk]) -> Optional[StreamChunk]:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


# =============================================================================
# Orchestrator
# =============================================================================


class DispatchOrchestrator:
    """Serves roles across providers with retry, fallback, and emulation.

    Args:
        registry: Provider registry (injected; never a global)
        config: Dispatch configuration (defaults to the loaded global config)
        resolver: Role resolver (defaults to one built from config/registry)
        emulator: Structured output emulator; its policy is fixed for the
            lifetime of the orchestrator
        telemetry_sink: Receives one UsageRecord per successful dispatch
        settings_resolver: Resolves AdapterSettings for a candidate
        sleep: Backoff sleep function (injectable for tests)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        config: Optional[DispatchConfig] = None,
        *,
        resolver: Optional[RoleResolver] = None,
        emulator: Optional[StructuredOutputEmulator] = None,
        telemetry_sink: Optional[TelemetrySink] = None,
        settings_resolver: Callable[..., Any] = resolve_adapter_settings,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.registry = registry
        self.config = config if config is not None else get_dispatch_config()
        self.resolver = resolver or RoleResolver(self.config, registry)
        self.emulator = emulator or StructuredOutputEmulator(
            policy=self.config.structured_output_policy,
            temperature_step=self.config.temperature_step,
            temperature_ceiling=self.config.temperature_ceiling,
        )
        self.telemetry_sink = telemetry_sink
        self._settings_resolver = settings_resolver
        self._sleep = sleep
        self._backoff = self.config.backoff_policy()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def dispatch(
        self,
        role: str,
        messages: MessagesLike,
        options: Optional[DispatchOptions] = None,
    ) -> ResponseEnvelope:
        """Generate text for a role.

        Raises:
            ConfigurationError: The role or its provider cannot be resolved
            ExhaustedError: Every candidate failed
            DispatchCancelledError: The cancellation token fired
        """
        return await self._dispatch(role, messages, None, options)

    async def dispatch_structured(
        self,
        role: str,
        messages: MessagesLike,
        schema: SchemaLike,
        options: Optional[DispatchOptions] = None,
    ) -> ResponseEnvelope:
        """Generate an object matching ``schema`` for a role.

        ``schema`` may be a JSON schema dict, a pydantic model class, or an
        ObjectSchema. Raises the same errors as ``dispatch``.
        """
        options = options or DispatchOptions()
        object_schema = ObjectSchema.coerce(schema, name=options.object_name)
        return await self._dispatch(role, messages, object_schema, options)

    def stream(
        self,
        role: str,
        messages: MessagesLike,
        options: Optional[DispatchOptions] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream text for a role.

        Retry and fallback apply until the first chunk has been yielded.
        A failure after output has started raises ExhaustedError instead of
        switching providers mid-response. The final chunk has ``done=True``
        and carries normalized usage.
        """
        return self._stream(role, messages, None, options or DispatchOptions())

    def stream_structured(
        self,
        role: str,
        messages: MessagesLike,
        schema: SchemaLike,
        options: Optional[DispatchOptions] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream the JSON text of an object matching ``schema`` for a role.

        The request carries the emulator's schema instructions and text
        chunks are yielded as they arrive. When the stream ends the reply is
        extracted and validated once; the final chunk carries ``object`` (and
        ``partial`` under the lenient policy). Corrective retries do not
        apply because output has already been sent, so an invalid reply
        under the strict policy raises ExhaustedError. Retry and fallback
        follow the same rule as ``stream``.
        """
        options = options or DispatchOptions()
        object_schema = ObjectSchema.coerce(schema, name=options.object_name)
        return self._stream(role, messages, object_schema, options)

    async def _stream(
        self,
        role: str,
        messages: MessagesLike,
        schema: Optional[ObjectSchema],
        options: DispatchOptions,
    ) -> AsyncIterator[StreamChunk]:
        candidates = self.resolver.resolve(role)
        envelope = self._build_envelope(role, messages, schema, options)
        deadline = Deadline(envelope.deadline)
        dispatch_id = generate_dispatch_id()
        attempts: List[AttemptRecord] = []
        logger.debug("Stream %s for role '%s' over %d candidate(s)", dispatch_id, envelope.role, len(candidates))

        for candidate in candidates:
            self._transition(DispatchState.SELECT, candidate)
            retries = 0
            while True:
                started = time.monotonic()
                emitted = False
                final: Optional[StreamChunk] = None
                parts: List[str] = []
                try:
                    self._check_attempt(candidate, envelope, deadline)
                    self._transition(DispatchState.ATTEMPT, candidate)
                    adapter = self._adapter(candidate)
                    timeout = deadline.effective_timeout(envelope.timeout_per_attempt)
                    request = replace(envelope.generation_request(candidate), timeout=timeout)
                    if schema is not None:
                        request = request.with_messages(self.emulator.augment_messages(request.messages, schema))
                    chunks = adapter.stream_text(request)
                    try:
                        while True:
                            chunk = await self._bounded(
                                lambda: _next_chunk(chunks),
                                candidate,
                                envelope,
                                timeout=deadline.effective_timeout(envelope.timeout_per_attempt),
                                operation=f"{candidate.provider}.stream_text",
                            )
                            if chunk is None:
                                break
                            if chunk.done:
                                final = replace(chunk, usage=normalize_usage(chunk.usage))
                                break
                            if chunk.text:
                                emitted = True
                                parts.append(chunk.text)
                                yield chunk
                    finally:
                        await chunks.aclose()
                    final = final or StreamChunk(done=True, usage=TokenUsage(), finish_reason=FinishReason.STOP)
                    if schema is not None:
                        settled = self.emulator.settle(
                            schema,
                            TextResult(text="".join(parts), usage=final.usage, model=candidate.model_id),
                            provider=candidate.provider,
                        )
                        final = replace(final, object=settled.object, partial=settled.partial)
                except OperationCancelled as exc:
                    raise self._cancelled(exc, candidate, retries, started, envelope, attempts) from exc
                except DispatchError as exc:
                    error = exc
                except Exception as exc:
                    error = classify_exception(exc, provider=candidate.provider)
                else:
                    attempts.append(self._record(candidate, retries, started))
                    self._transition(DispatchState.SUCCESS, candidate)
                    await self._emit_telemetry(
                        candidate, final.usage, dispatch_id, envelope.command_name, partial=final.partial
                    )
                    yield final
                    return

                attempts.append(self._record(candidate, retries, started, error))
                if emitted:
                    logger.error(
                        "Stream from %s failed after output started: %s", candidate.label, error.message
                    )
                    raise ExhaustedError(
                        f"Stream from {candidate.label} failed after output started: {error.message}",
                        role=envelope.role,
                        attempts=attempts,
                    ) from error
                if not await self._should_retry(candidate, error, retries, envelope, deadline, attempts):
                    break
                retries += 1

            if deadline.expired:
                logger.error("Dispatch deadline of %ss exceeded for role '%s'", deadline.seconds, envelope.role)
                break

        raise self._exhausted(envelope, candidates, attempts)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    async def _dispatch(
        self,
        role: str,
        messages: MessagesLike,
        schema: Optional[ObjectSchema],
        options: Optional[DispatchOptions],
    ) -> ResponseEnvelope:
        options = options or DispatchOptions()
        candidates = self.resolver.resolve(role)
        envelope = self._build_envelope(role, messages, schema, options)

        with dispatch_context(role=envelope.role) as ctx:
            deadline = Deadline(envelope.deadline)
            attempts: List[AttemptRecord] = []
            logger.debug(
                "Dispatching role '%s' over %d candidate(s): %s",
                envelope.role,
                len(candidates),
                ", ".join(c.label for c in candidates),
            )

            for candidate in candidates:
                self._transition(DispatchState.SELECT, candidate)
                response = await self._run_candidate(candidate, envelope, deadline, attempts, ctx.dispatch_id)
                if response is not None:
                    return response
                if deadline.expired:
                    logger.error(
                        "Dispatch deadline of %ss exceeded for role '%s'", deadline.seconds, envelope.role
                    )
                    break

            raise self._exhausted(envelope, candidates, attempts)

    async def _run_candidate(
        self,
        candidate: Candidate,
        envelope: RequestEnvelope,
        deadline: Deadline,
        attempts: List[AttemptRecord],
        dispatch_id: str,
    ) -> Optional[ResponseEnvelope]:
        """Attempt one candidate, retrying transient errors. None means advance."""
        retries = 0
        while True:
            started = time.monotonic()
            try:
                self._check_attempt(candidate, envelope, deadline)
                self._transition(DispatchState.ATTEMPT, candidate)
                adapter = self._adapter(candidate)
                outcome = await self._attempt(adapter, candidate, envelope, deadline)
            except OperationCancelled as exc:
                raise self._cancelled(exc, candidate, retries, started, envelope, attempts) from exc
            except DispatchError as exc:
                error = exc
            except Exception as exc:
                error = classify_exception(exc, provider=candidate.provider)
            else:
                attempts.append(self._record(candidate, retries, started))
                self._transition(DispatchState.SUCCESS, candidate)
                return await self._finish(candidate, envelope, outcome, attempts, dispatch_id)

            attempts.append(self._record(candidate, retries, started, error))
            if not await self._should_retry(candidate, error, retries, envelope, deadline, attempts):
                return None
            retries += 1

    async def _attempt(
        self,
        adapter: ProviderAdapter,
        candidate: Candidate,
        envelope: RequestEnvelope,
        deadline: Deadline,
    ) -> _Outcome:
        request = envelope.generation_request(candidate)
        # One budget covers every provider call of the attempt, including a
        # native structured call and all emulated corrective calls.
        budget = Deadline(deadline.effective_timeout(envelope.timeout_per_attempt))

        if envelope.schema is None:
            result = await self._bounded_call(adapter.generate_text, request, candidate, envelope, budget, "generate_text")
            return _Outcome(
                text=result.text,
                usage=normalize_usage(result.usage),
                finish_reason=result.finish_reason,
                model=result.model,
            )

        if self.registry.supports_native_structured(candidate.provider, candidate.model_id):
            try:
                obj = await self._bounded_call(
                    adapter.generate_object, request, candidate, envelope, budget, "generate_object"
                )
                return _Outcome(
                    object=obj.object,
                    usage=normalize_usage(obj.usage),
                    finish_reason=obj.finish_reason,
                    model=obj.model,
                    partial=obj.partial,
                )
            except NoStructuredOutputError as exc:
                if not exc.unsupported:
                    raise
                self.registry.mark_structured_output_unsupported(candidate.provider, candidate.model_id)

        emulated = await self.emulator.run(
            request,
            lambda r: self._bounded_call(adapter.generate_text, r, candidate, envelope, budget, "generate_text"),
            max_retries=envelope.max_retries,
            supports_temperature=adapter.supports(ProviderCapability.TEMPERATURE_CONTROL),
            provider=candidate.provider,
        )
        return _Outcome(
            object=emulated.object,
            usage=emulated.usage,
            finish_reason=emulated.finish_reason,
            model=emulated.model,
            partial=emulated.partial,
        )

    async def _should_retry(
        self,
        candidate: Candidate,
        error: DispatchError,
        retries: int,
        envelope: RequestEnvelope,
        deadline: Deadline,
        attempts: List[AttemptRecord],
    ) -> bool:
        """Decide RETRY vs ADVANCE after a failed attempt; sleeps before a retry."""
        if error.retryable and retries < self.config.max_retries and not deadline.expired:
            self._transition(DispatchState.RETRY, candidate)
            delay = self._backoff.delay_for(retries + 1, getattr(error, "retry_after", None))
            remaining = deadline.remaining()
            if remaining is not None:
                delay = min(delay, remaining)
            logger.info(
                "Retrying %s in %.2fs after %s (retry %d/%d): %s",
                candidate.label,
                delay,
                error.kind.value,
                retries + 1,
                self.config.max_retries,
                error.message,
            )
            try:
                await cancellable_sleep(delay, envelope.cancellation_token, sleep=self._sleep)
            except OperationCancelled as exc:
                raise DispatchCancelledError(
                    f"Dispatch cancelled during backoff: {exc}",
                    role=envelope.role,
                    attempts=attempts,
                ) from exc
            return True

        self._transition(DispatchState.ADVANCE, candidate)
        logger.warning("Advancing past %s after %s: %s", candidate.label, error.kind.value, error.message)
        return False

    # -------------------------------------------------------------------------
    # Provider calls
    # -------------------------------------------------------------------------

    def _adapter(self, candidate: Candidate) -> ProviderAdapter:
        descriptor = self.registry.descriptor(candidate.provider)
        settings = self._settings_resolver(self.config, candidate, descriptor)
        return self.registry.get(candidate.provider, settings)

    async def _bounded_call(
        self,
        method: Callable[[GenerationRequest], Awaitable[T]],
        request: GenerationRequest,
        candidate: Candidate,
        envelope: RequestEnvelope,
        budget: Deadline,
        name: str,
    ) -> T:
        """Make one provider call within what is left of the attempt budget."""
        if budget.expired:
            raise ProviderTimeoutError(
                f"Attempt budget of {budget.seconds}s exhausted before {name}",
                provider=candidate.provider,
                timeout_seconds=budget.seconds,
            )
        timeout = budget.remaining()
        bounded = replace(request, timeout=timeout)
        return await self._bounded(
            lambda: method(bounded),
            candidate,
            envelope,
            timeout=timeout,
            operation=f"{candidate.provider}.{name}",
        )

    async def _bounded(
        self,
        factory: Callable[[], Awaitable[T]],
        candidate: Candidate,
        envelope: RequestEnvelope,
        *,
        timeout: Optional[float],
        operation: str,
    ) -> T:
        """Run one provider call under a timeout and the cancellation token."""
        try:
            result = await run_cancellable(
                factory,
                timeout=timeout,
                token=envelope.cancellation_token,
                operation=operation,
            )
        except TimeoutException as exc:
            raise ProviderTimeoutError(
                str(exc),
                provider=candidate.provider,
                timeout_seconds=exc.timeout_seconds,
            ) from exc
        if envelope.cancellation_token is not None:
            envelope.cancellation_token.raise_if_cancelled(operation)
        return result

    def _check_attempt(self, candidate: Candidate, envelope: RequestEnvelope, deadline: Deadline) -> None:
        if envelope.cancellation_token is not None:
            envelope.cancellation_token.raise_if_cancelled(f"{candidate.provider}.attempt")
        if deadline.expired:
            raise ProviderTimeoutError(
                f"Dispatch deadline of {deadline.seconds}s exceeded",
                provider=candidate.provider,
                timeout_seconds=deadline.seconds,
            )

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    async def _finish(
        self,
        candidate: Candidate,
        envelope: RequestEnvelope,
        outcome: _Outcome,
        attempts: List[AttemptRecord],
        dispatch_id: str,
    ) -> ResponseEnvelope:
        record = await self._emit_telemetry(
            candidate, outcome.usage, dispatch_id, envelope.command_name, partial=outcome.partial
        )
        logger.debug(
            "Role '%s' served by %s after %d attempt(s), %d tokens",
            envelope.role,
            candidate.label,
            len(attempts),
            outcome.usage.total_tokens,
        )
        return ResponseEnvelope(
            text=outcome.text,
            object=outcome.object,
            usage=outcome.usage,
            finish_reason=outcome.finish_reason,
            provider_name=candidate.provider,
            model=outcome.model or candidate.model_id,
            role=envelope.role,
            partial=outcome.partial,
            attempts=list(attempts),
            cost=record.cost,
            currency=record.currency,
            dispatch_id=dispatch_id,
        )

    async def _emit_telemetry(
        self,
        candidate: Candidate,
        usage: Any,
        dispatch_id: str,
        command_name: Optional[str],
        *,
        partial: bool,
    ) -> UsageRecord:
        record = UsageRecord.build(
            provider=candidate.provider,
            role=candidate.role,
            model=candidate.model_id,
            usage=normalize_usage(usage),
            pricing=self.config.get_pricing(candidate.provider, candidate.model_id),
            dispatch_id=dispatch_id,
            command_name=command_name,
            partial=partial,
        )
        await emit_usage(self.telemetry_sink, record)
        return record

    def _record(
        self,
        candidate: Candidate,
        retries: int,
        started: float,
        error: Optional[DispatchError] = None,
    ) -> AttemptRecord:
        return AttemptRecord(
            provider_name=candidate.provider,
            model=candidate.model_id,
            role=candidate.role,
            attempt_number=retries + 1,
            error_kind=error.kind if error else None,
            retryable=error.retryable if error else False,
            latency=time.monotonic() - started,
            message=error.message if error else "ok",
            is_retry=retries > 0,
        )

    def _cancelled(
        self,
        exc: OperationCancelled,
        candidate: Candidate,
        retries: int,
        started: float,
        envelope: RequestEnvelope,
        attempts: List[AttemptRecord],
    ) -> DispatchCancelledError:
        attempts.append(
            AttemptRecord(
                provider_name=candidate.provider,
                model=candidate.model_id,
                role=candidate.role,
                attempt_number=retries + 1,
                error_kind=ErrorKind.CANCELLED,
                retryable=False,
                latency=time.monotonic() - started,
                message=str(exc),
                is_retry=retries > 0,
            )
        )
        logger.info("Dispatch for role '%s' cancelled during %s", envelope.role, candidate.label)
        return DispatchCancelledError(
            f"Dispatch for role '{envelope.role}' cancelled: {exc}",
            role=envelope.role,
            attempts=attempts,
        )

    def _exhausted(
        self,
        envelope: RequestEnvelope,
        candidates: Sequence[Candidate],
        attempts: List[AttemptRecord],
    ) -> ExhaustedError:
        self._transition(DispatchState.EXHAUSTED)
        error = ExhaustedError(
            f"All {len(candidates)} candidate(s) for role '{envelope.role}' failed",
            role=envelope.role,
            attempts=attempts,
        )
        logger.error("%s: %s", error.message, "; ".join(error.reasons))
        return error

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _build_envelope(
        self,
        role: str,
        messages: MessagesLike,
        schema: Optional[ObjectSchema],
        options: DispatchOptions,
    ) -> RequestEnvelope:
        max_retries = options.max_retries
        if max_retries is None:
            max_retries = self.config.structured_max_retries
        if max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {max_retries}")
        return RequestEnvelope(
            role=normalize_role(role),
            messages=apply_response_language(coerce_messages(messages), self.config.response_language),
            schema=schema,
            object_name=schema.name if schema is not None else (options.object_name or "generated_object"),
            max_retries=max_retries,
            timeout_per_attempt=(
                options.timeout_per_attempt
                if options.timeout_per_attempt is not None
                else self.config.timeout_per_attempt
            ),
            deadline=options.deadline if options.deadline is not None else self.config.deadline,
            cancellation_token=options.cancellation_token,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            command_name=options.command_name,
        )

    def _transition(self, state: DispatchState, candidate: Optional[Candidate] = None) -> None:
        if candidate is None:
            logger.debug("-> %s", state.value)
        else:
            logger.debug("-> %s (%s)", state.value, candidate.label)


__all__ = [
    "DispatchState",
    "AttemptRecord",
    "DispatchOptions",
    "RequestEnvelope",
    "ResponseEnvelope",
    "MessagesLike",
    "coerce_messages",
    "apply_response_language",
    "DispatchOrchestrator",
]
