"""
Structured output emulation for backends without native support.

The emulator turns a schema into prompt instructions, calls the backend
for free text, recovers JSON from the reply, validates it, and on failure
asks again with a corrective message naming exactly what was wrong.

It owns only this corrective loop. Transient backend errors raised by the
text call propagate unchanged so the orchestrator can apply its own
retry/fallback policy; the emulator reports one final outcome per
attempt.

Exhaustion policy (fixed per deployment):
    STRICT  - raise SchemaValidationError / NoStructuredOutputError
    LENIENT - backfill placeholders for missing/empty required fields and
              return the object flagged ``partial=True``
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple

from role_dispatch.core.errors import NoStructuredOutputError, SchemaValidationError
from role_dispatch.core.providers.base import (
    ChatMessage,
    ChatRole,
    FinishReason,
    GenerationRequest,
    TextResult,
    assistant,
    user,
)
from role_dispatch.core.structured.extraction import (
    DEFAULT_STRATEGIES,
    ExtractionStrategy,
    try_extract_json,
)
from role_dispatch.core.structured.schema import FieldSpec, ObjectSchema, ValidationReport
from role_dispatch.core.usage import TokenUsage, normalize_usage

logger = logging.getLogger(__name__)

TextCall = Callable[[GenerationRequest], Awaitable[TextResult]]


class StructuredOutputPolicy(str, Enum):
    """What to do when corrective retries are exhausted."""

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(frozen=True)
class EmulationResult:
    """Outcome of a successful (or leniently backfilled) emulation.

    Attributes:
        object: Validated object (model instance for model-backed schemas)
        usage: Usage summed across every call the emulator made
        finish_reason: Finish reason of the final call
        model: Model reported by the final call
        calls: Number of text calls made
        partial: True when placeholders were backfilled
        filled_fields: Names of backfilled fields
    """

    object: Any
    usage: TokenUsage
    finish_reason: FinishReason
    model: Optional[str]
    calls: int
    partial: bool = False
    filled_fields: Tuple[str, ...] = ()


class StructuredOutputEmulator:
    """Prompt-and-repair loop producing schema-valid objects from free text.

    Args:
        policy: Exhaustion policy for this deployment
        temperature_step: Temperature increase per corrective retry
        temperature_ceiling: Upper bound for the raised temperature
        strategies: Ordered JSON extraction strategies
    """

    def __init__(
        self,
        *,
        policy: StructuredOutputPolicy = StructuredOutputPolicy.STRICT,
        temperature_step: float = 0.2,
        temperature_ceiling: float = 1.0,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    ):
        self.policy = StructuredOutputPolicy(policy)
        self.temperature_step = temperature_step
        self.temperature_ceiling = temperature_ceiling
        self.strategies = tuple(strategies)

    # -------------------------------------------------------------------------
    # Prompt synthesis
    # -------------------------------------------------------------------------

    def _render_fields(self, specs: Sequence[FieldSpec], indent: int = 0) -> List[str]:
        lines = []
        pad = "  " * indent
        for spec in specs:
            marker = "required" if spec.required else "optional"
            line = f"{pad}- {spec.name} ({spec.type}, {marker})"
            if spec.description:
                line += f": {spec.description}"
            if spec.constraints:
                line += f" [{'; '.join(spec.constraints)}]"
            lines.append(line)
            if spec.children:
                lines.extend(self._render_fields(spec.children, indent + 1))
        return lines

    def build_instructions(self, schema: ObjectSchema) -> str:
        """Render the schema as a natural-language instruction block."""
        lines = [
            f'You must respond with a single JSON object named "{schema.name}".',
            "",
            "Fields:",
        ]
        field_lines = self._render_fields(schema.fields())
        lines.extend(field_lines or ["- (any JSON value matching the schema below)"])
        if schema.required:
            lines.extend(["", f"Required fields: {', '.join(schema.required)}"])
        lines.extend(
            [
                "",
                "Example:",
                "```json",
                json.dumps(schema.example(), indent=2, default=str),
                "```",
                "",
                "JSON Schema:",
                json.dumps(schema.json_schema, separators=(",", ":"), default=str),
            ]
        )
        return "\n".join(lines)

    def hard_constraint(self, schema: ObjectSchema) -> ChatMessage:
        return user(
            f'Respond with only the JSON object for "{schema.name}". '
            "Do not include explanations, markdown, or any text before or after the JSON."
        )

    def augment_messages(self, messages: Sequence[ChatMessage], schema: ObjectSchema) -> List[ChatMessage]:
        """Append instructions to the system prompt and a final constraint turn.

        The first system message is extended; if there is none a system
        message is inserted at the front.
        """
        instructions = self.build_instructions(schema)
        augmented: List[ChatMessage] = []
        extended = False
        for message in messages:
            if message.role == ChatRole.SYSTEM and not extended:
                augmented.append(ChatMessage(ChatRole.SYSTEM, f"{message.content}\n\n{instructions}"))
                extended = True
            else:
                augmented.append(message)
        if not extended:
            augmented.insert(0, ChatMessage(ChatRole.SYSTEM, instructions))
        augmented.append(self.hard_constraint(schema))
        return augmented

    def corrective_message(self, schema: ObjectSchema, report: Optional[ValidationReport]) -> ChatMessage:
        """Follow-up turn naming the violations of the previous reply.

        ``report=None`` means the previous reply was not parseable JSON.
        """
        if report is None:
            body = [
                "Your previous response could not be parsed as JSON.",
                f'Respond again with only a valid JSON object for "{schema.name}".',
            ]
        else:
            body = ["Your previous response did not match the required structure."]
            if report.missing:
                body.append(f"Missing required fields: {', '.join(report.missing)}.")
            if report.empty:
                body.append(f"Required fields that must not be empty: {', '.join(report.empty)}.")
            if report.errors:
                body.append("Other problems:")
                body.extend(f"- {error}" for error in report.errors)
            specs = {spec.name: spec for spec in schema.fields()}
            for name in report.missing + report.empty:
                spec = specs.get(name)
                if spec is not None:
                    hint = f"{name} must be a {spec.type}"
                    if spec.constraints:
                        hint += f" ({'; '.join(spec.constraints)})"
                    body.append(hint + ".")
            body.append("Respond again with only the complete JSON object.")
        if schema.required:
            body.append(f"Every one of these fields is required: {', '.join(schema.required)}.")
        return user("\n".join(body))

    def next_temperature(self, current: Optional[float]) -> Optional[float]:
        """Raise the temperature by one step, bounded by the ceiling.

        Never lowers a temperature already above the ceiling; leaves an
        unset temperature unset.
        """
        if current is None or current >= self.temperature_ceiling:
            return current
        return round(min(current + self.temperature_step, self.temperature_ceiling), 4)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(
        self,
        request: GenerationRequest,
        call: TextCall,
        *,
        max_retries: int = 2,
        supports_temperature: bool = True,
        provider: Optional[str] = None,
    ) -> EmulationResult:
        """Produce a schema-valid object with at most ``max_retries + 1`` calls.

        Args:
            request: Request carrying the caller's messages and schema
            call: Performs one text generation (bounded by the caller)
            max_retries: Corrective retries after the first call
            supports_temperature: Whether raising temperature has any effect
            provider: Provider name for error attribution

        Raises:
            NoStructuredOutputError: STRICT policy, last reply unparseable;
                or LENIENT policy with no parseable object at all
            SchemaValidationError: STRICT policy, last object invalid
        """
        if request.schema is None:
            raise ValueError("Structured output emulation requires a schema")
        schema = request.schema

        messages = self.augment_messages(request.messages, schema)
        temperature = request.temperature
        usage = TokenUsage()
        last_value: Any = None
        last_report: Optional[ValidationReport] = None
        last_result: Optional[TextResult] = None
        last_parsed = False
        calls = 0

        for call_index in range(max(max_retries, 0) + 1):
            current = request.with_messages(messages).with_temperature(temperature)
            result = await call(current)
            calls += 1
            last_result = result
            usage = usage + normalize_usage(result.usage)

            extraction = try_extract_json(result.text, self.strategies)
            if extraction is None:
                last_parsed = False
                report = None
                logger.debug("Emulated call %d for %s returned no parseable JSON", calls, provider)
            else:
                last_parsed = True
                last_value = extraction.value
                report = schema.validate(extraction.value)
                last_report = report
                if report.valid:
                    logger.debug(
                        "Emulated call %d for %s produced a valid object via %s",
                        calls,
                        provider,
                        extraction.strategy,
                    )
                    return EmulationResult(
                        object=schema.finalize(extraction.value),
                        usage=usage,
                        finish_reason=result.finish_reason,
                        model=result.model,
                        calls=calls,
                    )
                logger.debug("Emulated call %d for %s failed validation: %s", calls, provider, report.summary())

            if call_index < max_retries:
                messages = messages + [
                    assistant(result.text or ""),
                    self.corrective_message(schema, report),
                ]
                if supports_temperature:
                    temperature = self.next_temperature(temperature)

        return self._exhausted(schema, provider, usage, last_result, calls, last_value, last_report, last_parsed)

    def settle(self, schema: ObjectSchema, result: TextResult, *, provider: Optional[str] = None) -> EmulationResult:
        """Extract and validate one complete reply without corrective retries.

        Used for streamed replies, which cannot be corrected once sent.
        The exhaustion policy applies to an invalid reply.
        """
        usage = normalize_usage(result.usage)
        extraction = try_extract_json(result.text, self.strategies)
        if extraction is None:
            return self._exhausted(schema, provider, usage, result, 1, None, None, False)
        report = schema.validate(extraction.value)
        if not report.valid:
            return self._exhausted(schema, provider, usage, result, 1, extraction.value, report, True)
        return EmulationResult(
            object=schema.finalize(extraction.value),
            usage=usage,
            finish_reason=result.finish_reason,
            model=result.model,
            calls=1,
        )

    def _exhausted(
        self,
        schema: ObjectSchema,
        provider: Optional[str],
        usage: TokenUsage,
        last_result: Optional[TextResult],
        calls: int,
        last_value: Any,
        last_report: Optional[ValidationReport],
        last_parsed: bool,
    ) -> EmulationResult:
        if self.policy == StructuredOutputPolicy.LENIENT and isinstance(last_value, Mapping):
            patched, filled = schema.backfill(last_value)
            logger.warning(
                "Structured output for %s still invalid after %d calls; backfilled %s",
                provider,
                calls,
                ", ".join(filled) or "nothing",
            )
            final: Any = patched
            if schema.validate(patched).valid:
                final = schema.finalize(patched)
            return EmulationResult(
                object=final,
                usage=usage,
                finish_reason=last_result.finish_reason if last_result else FinishReason.STOP,
                model=last_result.model if last_result else None,
                calls=calls,
                partial=True,
                filled_fields=tuple(filled),
            )

        raw_text = last_result.text if last_result else None
        if not last_parsed or last_report is None:
            raise NoStructuredOutputError(
                f"No parseable JSON after {calls} call(s)",
                provider=provider,
                raw_text=raw_text,
            )
        raise SchemaValidationError(
            f"Object failed validation after {calls} call(s): {last_report.summary()}",
            provider=provider,
            missing_fields=last_report.missing,
            empty_fields=last_report.empty,
            errors=last_report.errors,
        )


__all__ = [
    "StructuredOutputPolicy",
    "EmulationResult",
    "TextCall",
    "StructuredOutputEmulator",
]
