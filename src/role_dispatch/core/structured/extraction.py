"""
JSON extraction from free-text model output.

Backends without native structured output answer in prose, often wrapping
the object in a markdown fence or surrounding it with commentary. The
strategies below are tried in order; the first that yields parseable JSON
wins.

    1. fenced_block   - content of a ```json / ``` fenced block
    2. balanced_span  - first top-level {...} or [...] span in the text
    3. raw_text       - the whole stripped text
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Sequence, Tuple

from role_dispatch.core.errors import NoStructuredOutputError

_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_-]*)[ \t]*\r?\n?(.*?)```", re.DOTALL)


@dataclass(frozen=True)
class ExtractionResult:
    """A parsed JSON value and the strategy that recovered it."""

    value: Any
    strategy: str


CandidateFinder = Callable[[str], Iterator[str]]


@dataclass(frozen=True)
class ExtractionStrategy:
    """A named way of locating JSON candidates in text."""

    name: str
    find: CandidateFinder


# =============================================================================
# Strategies
# =============================================================================


def _fenced_blocks(text: str) -> Iterator[str]:
    """Yield fenced block bodies, json-tagged blocks first."""
    tagged = []
    untagged = []
    for match in _FENCE_RE.finditer(text):
        lang, body = match.group(1).lower(), match.group(2).strip()
        if not body:
            continue
        if lang in ("json", "json5", "jsonc"):
            tagged.append(body)
        elif not lang:
            untagged.append(body)
    yield from tagged
    yield from untagged


def _balanced_spans(text: str) -> Iterator[str]:
    """Yield top-level ``{...}`` / ``[...]`` spans, left to right.

    One linear pass with a bracket stack. Brackets inside JSON string
    literals are ignored, as are escaped quotes within them. Spans nested
    inside a top-level span are never yielded on their own. The scan stops
    at a mismatched closer or an opener that never closes, since nothing
    after either can form a well-nested top-level span.
    """
    pairs = {"{": "}", "[": "]"}
    stack: List[str] = []
    opening = 0
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if not stack:
            if char in pairs:
                stack.append(pairs[char])
                opening = index
            continue
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in pairs:
            stack.append(pairs[char])
        elif char in ("}", "]"):
            if char != stack[-1]:
                return
            stack.pop()
            if not stack:
                yield text[opening : index + 1]


def _raw_text(text: str) -> Iterator[str]:
    stripped = text.strip()
    if stripped:
        yield stripped


DEFAULT_STRATEGIES: Tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy("fenced_block", _fenced_blocks),
    ExtractionStrategy("balanced_span", _balanced_spans),
    ExtractionStrategy("raw_text", _raw_text),
)


# =============================================================================
# Public API
# =============================================================================


def try_extract_json(
    text: Optional[str],
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
) -> Optional[ExtractionResult]:
    """Return the first JSON value any strategy recovers, or None."""
    if not text:
        return None
    for strategy in strategies:
        for candidate in strategy.find(text):
            try:
                value = json.loads(candidate)
            except (json.JSONDecodeError, ValueError):
                continue
            return ExtractionResult(value=value, strategy=strategy.name)
    return None


def extract_json(
    text: Optional[str],
    strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    *,
    provider: Optional[str] = None,
) -> ExtractionResult:
    """Recover a JSON value from model output.

    Raises:
        NoStructuredOutputError: No strategy produced parseable JSON.
    """
    result = try_extract_json(text, strategies)
    if result is None:
        raise NoStructuredOutputError(
            "Response did not contain a parseable JSON value",
            provider=provider,
            raw_text=text,
        )
    return result


__all__ = [
    "ExtractionResult",
    "ExtractionStrategy",
    "DEFAULT_STRATEGIES",
    "try_extract_json",
    "extract_json",
]
