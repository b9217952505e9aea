"""
Object schemas for structured generation.

An ObjectSchema wraps a JSON schema (given directly, or generated from a
pydantic model) and provides everything the structured output paths need:

- the raw JSON schema for backends with native support
- field descriptions with constraint text, for prompt synthesis
- an illustrative example object
- validation that separates missing, empty, and otherwise invalid fields
- placeholder backfill for the lenient exhaustion policy
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union

from jsonschema import Draft7Validator
from pydantic import BaseModel, ValidationError

from role_dispatch.core.errors import ConfigurationError

SchemaLike = Union["ObjectSchema", Mapping[str, Any], Type[BaseModel]]


# =============================================================================
# Field descriptions
# =============================================================================


@dataclass(frozen=True)
class FieldSpec:
    """Description of a single schema property.

    Attributes:
        name: Property name
        type: JSON type label ("string", "array of integer", ...)
        required: Whether the property is required
        description: Free-text description from the schema
        constraints: Human-readable constraint phrases
        children: Nested properties for object-typed fields
    """

    name: str
    type: str
    required: bool = False
    description: Optional[str] = None
    constraints: Tuple[str, ...] = ()
    children: Tuple["FieldSpec", ...] = ()


_CONSTRAINT_PHRASES: Tuple[Tuple[str, str], ...] = (
    ("minLength", "at least {} characters"),
    ("maxLength", "at most {} characters"),
    ("minimum", "minimum {}"),
    ("maximum", "maximum {}"),
    ("exclusiveMinimum", "greater than {}"),
    ("exclusiveMaximum", "less than {}"),
    ("multipleOf", "multiple of {}"),
    ("minItems", "at least {} items"),
    ("maxItems", "at most {} items"),
    ("pattern", "must match pattern {}"),
    ("format", "format: {}"),
)


@dataclass
class ValidationReport:
    """Outcome of validating a value against an ObjectSchema.

    Attributes:
        missing: Required top-level fields absent from the object
        empty: Required top-level fields present but null or blank
        errors: Other violations, formatted as "path: message"
    """

    missing: List[str] = field(default_factory=list)
    empty: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not (self.missing or self.empty or self.errors)

    @property
    def violating_fields(self) -> List[str]:
        fields = list(self.missing) + list(self.empty)
        for error in self.errors:
            path = error.split(":", 1)[0]
            if path != "<root>" and path not in fields:
                fields.append(path)
        return fields

    def summary(self) -> str:
        parts = []
        if self.missing:
            parts.append(f"missing required fields: {', '.join(self.missing)}")
        if self.empty:
            parts.append(f"empty required fields: {', '.join(self.empty)}")
        parts.extend(self.errors)
        return "; ".join(parts) or "valid"


# =============================================================================
# Schema wrapper
# =============================================================================


class ObjectSchema:
    """A JSON schema describing the object a caller wants back.

    Example:
        >>> schema = ObjectSchema.from_json_schema({
        ...     "type": "object",
        ...     "properties": {"title": {"type": "string"}},
        ...     "required": ["title"],
        ... })
        >>> schema.validate({"title": "x"}).valid
        True
    """

    def __init__(
        self,
        json_schema: Mapping[str, Any],
        *,
        name: str = "generated_object",
        model: Optional[Type[BaseModel]] = None,
    ):
        if not isinstance(json_schema, Mapping):
            raise ConfigurationError("Schema must be a JSON schema mapping or a pydantic model")
        self.json_schema: Dict[str, Any] = copy.deepcopy(dict(json_schema))
        self.name = name
        self.model = model
        self._validator = Draft7Validator(self.json_schema)

    @classmethod
    def from_json_schema(cls, json_schema: Mapping[str, Any], name: Optional[str] = None) -> "ObjectSchema":
        return cls(json_schema, name=name or str(json_schema.get("title") or "generated_object"))

    @classmethod
    def from_model(cls, model: Type[BaseModel], name: Optional[str] = None) -> "ObjectSchema":
        return cls(model.model_json_schema(), name=name or model.__name__, model=model)

    @classmethod
    def coerce(cls, value: SchemaLike, name: Optional[str] = None) -> "ObjectSchema":
        """Build an ObjectSchema from a schema dict, pydantic model, or itself."""
        if isinstance(value, ObjectSchema):
            return value
        if isinstance(value, type) and issubclass(value, BaseModel):
            return cls.from_model(value, name=name)
        if isinstance(value, Mapping):
            return cls.from_json_schema(value, name=name)
        raise ConfigurationError(f"Unsupported schema type: {type(value).__name__}")

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def properties(self) -> Dict[str, Any]:
        return dict(self.json_schema.get("properties") or {})

    @property
    def required(self) -> List[str]:
        return list(self.json_schema.get("required") or [])

    def _resolve(self, node: Mapping[str, Any]) -> Mapping[str, Any]:
        """Follow local ``$ref`` pointers (``#/$defs/...``, ``#/definitions/...``)."""
        seen = set()
        while isinstance(node, Mapping) and "$ref" in node:
            ref = node["$ref"]
            if ref in seen or not isinstance(ref, str) or not ref.startswith("#/"):
                break
            seen.add(ref)
            target: Any = self.json_schema
            for part in ref[2:].split("/"):
                target = target.get(part, {}) if isinstance(target, Mapping) else {}
            node = target
        if isinstance(node, Mapping) and "anyOf" in node:
            # Optional[X] from pydantic renders as anyOf [X, null]
            options = [o for o in node["anyOf"] if isinstance(o, Mapping) and o.get("type") != "null"]
            if len(options) == 1:
                merged = {k: v for k, v in node.items() if k != "anyOf"}
                merged.update(self._resolve(options[0]))
                return merged
        return node

    def _type_label(self, node: Mapping[str, Any]) -> str:
        node = self._resolve(node)
        if "enum" in node:
            return "enum"
        json_type = node.get("type")
        if isinstance(json_type, list):
            json_type = next((t for t in json_type if t != "null"), "string")
        if json_type == "array":
            items = node.get("items")
            if isinstance(items, Mapping):
                return f"array of {self._type_label(items)}"
            return "array"
        if json_type is None and "properties" in node:
            return "object"
        return json_type or "any"

    def _constraints(self, node: Mapping[str, Any]) -> Tuple[str, ...]:
        node = self._resolve(node)
        phrases = []
        if "enum" in node:
            phrases.append("one of: " + ", ".join(json.dumps(v) for v in node["enum"]))
        for key, template in _CONSTRAINT_PHRASES:
            if key in node:
                phrases.append(template.format(node[key]))
        return tuple(phrases)

    def _field_specs(self, node: Mapping[str, Any], depth: int) -> Tuple[FieldSpec, ...]:
        node = self._resolve(node)
        required = set(node.get("required") or [])
        specs = []
        for name, prop in (node.get("properties") or {}).items():
            resolved = self._resolve(prop)
            children: Tuple[FieldSpec, ...] = ()
            if depth < 3 and self._type_label(resolved) == "object":
                children = self._field_specs(resolved, depth + 1)
            specs.append(
                FieldSpec(
                    name=name,
                    type=self._type_label(resolved),
                    required=name in required,
                    description=resolved.get("description") or prop.get("description"),
                    constraints=self._constraints(resolved),
                    children=children,
                )
            )
        return tuple(specs)

    def fields(self) -> Tuple[FieldSpec, ...]:
        """Top-level field descriptions, with nested objects expanded."""
        return self._field_specs(self.json_schema, 0)

    # -------------------------------------------------------------------------
    # Examples and placeholders
    # -------------------------------------------------------------------------

    def _sample(self, name: str, node: Mapping[str, Any], depth: int) -> Any:
        node = self._resolve(node)
        if "examples" in node and isinstance(node["examples"], list) and node["examples"]:
            return node["examples"][0]
        if "default" in node:
            return node["default"]
        if "enum" in node and node["enum"]:
            return node["enum"][0]
        label = self._type_label(node)
        if label == "string":
            return f"<{name}>"
        if label == "integer":
            return 0
        if label == "number":
            return 0.0
        if label == "boolean":
            return False
        if label.startswith("array"):
            items = node.get("items")
            if isinstance(items, Mapping) and depth < 3:
                return [self._sample(name, items, depth + 1)]
            return []
        if label == "object" and depth < 3:
            return {
                key: self._sample(key, prop, depth + 1)
                for key, prop in (node.get("properties") or {}).items()
            }
        return None

    def example(self) -> Any:
        """An illustrative instance of the schema, used in prompts."""
        return self._sample(self.name, self.json_schema, 0)

    def placeholder(self, name: str) -> Any:
        """Placeholder value for a missing required top-level field."""
        node = self._resolve(self.properties.get(name, {}))
        if "default" in node:
            return node["default"]
        if "enum" in node and node["enum"]:
            return node["enum"][0]
        label = self._type_label(node)
        if label == "string":
            return f"Default value for {name}"
        if label in ("integer", "number"):
            return 0
        if label == "boolean":
            return False
        if label.startswith("array"):
            return []
        if label == "object":
            return {}
        return None

    def backfill(self, value: Any) -> Tuple[Dict[str, Any], List[str]]:
        """Fill missing or empty required fields with placeholders.

        Returns:
            Tuple of (patched object, names of fields that were filled)
        """
        patched = dict(value) if isinstance(value, Mapping) else {}
        filled = []
        for name in self.required:
            if name not in patched or _is_empty(patched[name]):
                patched[name] = self.placeholder(name)
                filled.append(name)
        return patched, filled

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, value: Any) -> ValidationReport:
        """Validate a value, classifying missing vs. empty required fields."""
        report = ValidationReport()

        if isinstance(value, Mapping):
            for name in self.required:
                if name not in value:
                    report.missing.append(name)
                elif _is_empty(value[name]):
                    report.empty.append(name)

        for error in sorted(self._validator.iter_errors(value), key=lambda e: list(e.absolute_path)):
            path = ".".join(str(p) for p in error.absolute_path)
            if error.validator == "required" and not path:
                continue
            report.errors.append(f"{path or '<root>'}: {error.message}")

        if report.valid and self.model is not None:
            try:
                self.model.model_validate(value)
            except ValidationError as exc:
                for detail in exc.errors():
                    loc = ".".join(str(p) for p in detail.get("loc", ())) or "<root>"
                    report.errors.append(f"{loc}: {detail.get('msg')}")

        return report

    def finalize(self, value: Any) -> Any:
        """Convert a validated value to the caller-facing form.

        Returns a model instance for model-backed schemas, the value itself
        otherwise.
        """
        if self.model is not None:
            return self.model.model_validate(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "schema": self.json_schema}


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


__all__ = [
    "SchemaLike",
    "FieldSpec",
    "ValidationReport",
    "ObjectSchema",
]
