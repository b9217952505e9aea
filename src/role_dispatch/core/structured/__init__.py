"""Structured output: schemas, JSON extraction, and emulation."""

from role_dispatch.core.structured.emulator import (
    EmulationResult,
    StructuredOutputEmulator,
    StructuredOutputPolicy,
)
from role_dispatch.core.structured.extraction import (
    DEFAULT_STRATEGIES,
    ExtractionResult,
    ExtractionStrategy,
    extract_json,
    try_extract_json,
)
from role_dispatch.core.structured.schema import FieldSpec, ObjectSchema, ValidationReport

__all__ = [
    "EmulationResult",
    "StructuredOutputEmulator",
    "StructuredOutputPolicy",
    "DEFAULT_STRATEGIES",
    "ExtractionResult",
    "ExtractionStrategy",
    "extract_json",
    "try_extract_json",
    "FieldSpec",
    "ObjectSchema",
    "ValidationReport",
]
