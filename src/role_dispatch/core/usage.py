"""
Usage normalization and telemetry.

Backends report token usage under different names (``prompt_tokens`` vs
``input_tokens`` vs ``promptTokens`` vs Ollama's ``prompt_eval_count``).
``normalize_usage`` maps all of them onto one TokenUsage whose total is
always ``input_tokens + output_tokens``.

After every successful dispatch the orchestrator builds one UsageRecord
and hands it to a TelemetrySink. Sinks are collaborators: a failing sink is
logged and never fails the dispatch.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)


# =============================================================================
# Canonical usage
# =============================================================================


@dataclass(frozen=True)
class TokenUsage:
    """Canonical token usage.

    Attributes:
        input_tokens: Tokens in the prompt
        output_tokens: Tokens generated
        total_tokens: Always input_tokens + output_tokens
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


INPUT_TOKEN_KEYS = ("input_tokens", "prompt_tokens", "inputTokens", "promptTokens", "prompt_eval_count")
OUTPUT_TOKEN_KEYS = ("output_tokens", "completion_tokens", "outputTokens", "completionTokens", "eval_count")


def _lookup(raw: Any, key: str) -> Any:
    if isinstance(raw, Mapping):
        return raw.get(key)
    return getattr(raw, key, None)


def _first_count(raw: Any, keys: tuple) -> Optional[int]:
    for key in keys:
        value = _lookup(raw, key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return max(int(value), 0)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def normalize_usage(raw: Any) -> TokenUsage:
    """Map a backend usage object or dict onto TokenUsage.

    Accepts TokenUsage, mappings, or SDK objects exposing the usage fields
    as attributes. A container with a nested ``usage`` member is unwrapped.
    Unknown shapes and None yield zero usage. Any ``total`` reported by the
    backend is ignored in favour of ``input + output``.
    """
    if raw is None:
        return TokenUsage()
    if isinstance(raw, TokenUsage):
        return raw

    input_tokens = _first_count(raw, INPUT_TOKEN_KEYS)
    output_tokens = _first_count(raw, OUTPUT_TOKEN_KEYS)

    if input_tokens is None and output_tokens is None:
        nested = _lookup(raw, "usage")
        if nested is not None and nested is not raw:
            return normalize_usage(nested)
        return TokenUsage()

    return TokenUsage(input_tokens=input_tokens or 0, output_tokens=output_tokens or 0)


# =============================================================================
# Pricing
# =============================================================================


@dataclass(frozen=True)
class ModelPricing:
    """Cost per one million tokens for a provider/model pair."""

    input: float = 0.0
    output: float = 0.0
    currency: str = "USD"

    def cost(self, usage: TokenUsage) -> float:
        total = (usage.input_tokens / 1_000_000) * self.input + (usage.output_tokens / 1_000_000) * self.output
        return round(total, 6)


# =============================================================================
# Telemetry
# =============================================================================


@dataclass(frozen=True)
class UsageRecord:
    """One record per successful dispatch."""

    provider: str
    role: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float = 0.0
    currency: str = "USD"
    dispatch_id: str = ""
    command_name: Optional[str] = None
    partial: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def build(
        cls,
        *,
        provider: str,
        role: str,
        model: str,
        usage: TokenUsage,
        pricing: Optional[ModelPricing] = None,
        dispatch_id: str = "",
        command_name: Optional[str] = None,
        partial: bool = False,
    ) -> "UsageRecord":
        return cls(
            provider=provider,
            role=role,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            cost=pricing.cost(usage) if pricing else 0.0,
            currency=pricing.currency if pricing else "USD",
            dispatch_id=dispatch_id,
            command_name=command_name,
            partial=partial,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@runtime_checkable
class TelemetrySink(Protocol):
    """Receives usage records. May be sync or async."""

    def record(self, record: UsageRecord) -> Union[None, Awaitable[None]]:
        ...


class LoggingTelemetrySink:
    """Writes each usage record to the log."""

    def __init__(self, level: int = logging.INFO, logger_name: Optional[str] = None):
        self.level = level
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    def record(self, record: UsageRecord) -> None:
        self._logger.log(
            self.level,
            "Usage %s/%s: %d in, %d out, cost %.6f %s",
            record.provider,
            record.model,
            record.input_tokens,
            record.output_tokens,
            record.cost,
            record.currency,
            extra={"usage": record.to_dict()},
        )


class InMemoryTelemetrySink:
    """Collects usage records in memory. Useful for tests and the CLI."""

    def __init__(self) -> None:
        self.records: List[UsageRecord] = []

    def record(self, record: UsageRecord) -> None:
        self.records.append(record)

    def totals(self) -> Dict[str, Any]:
        usage = TokenUsage()
        cost = 0.0
        for rec in self.records:
            usage = usage + TokenUsage(rec.input_tokens, rec.output_tokens)
            cost += rec.cost
        return {**usage.to_dict(), "cost": round(cost, 6), "count": len(self.records)}


async def emit_usage(sink: Optional[TelemetrySink], record: UsageRecord) -> None:
    """Deliver a record to a sink, logging (not raising) on failure."""
    if sink is None:
        return
    try:
        result = sink.record(record)
        if inspect.isawaitable(result):
            await result
    except Exception as exc:
        logger.warning("Telemetry sink %s failed: %s", type(sink).__name__, exc, exc_info=True)


__all__ = [
    "TokenUsage",
    "INPUT_TOKEN_KEYS",
    "OUTPUT_TOKEN_KEYS",
    "normalize_usage",
    "ModelPricing",
    "UsageRecord",
    "TelemetrySink",
    "LoggingTelemetrySink",
    "InMemoryTelemetrySink",
    "emit_usage",
]
