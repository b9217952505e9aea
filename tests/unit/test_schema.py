"""
Tests for ObjectSchema: construction, field descriptions, examples,
validation and placeholder backfill.
"""

from typing import List, Optional

import pytest
from pydantic import BaseModel, Field

from role_dispatch.core.errors import ConfigurationError
from role_dispatch.core.structured.schema import ObjectSchema


ARTICLE_SCHEMA = {
    "title": "article",
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Headline", "minLength": 3},
        "score": {"type": "integer", "minimum": 0, "maximum": 10},
        "tags": {"type": "array", "items": {"type": "string"}, "maxItems": 5},
        "status": {"enum": ["draft", "published"]},
        "author": {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        },
    },
    "required": ["title", "score", "tags"],
}


class Review(BaseModel):
    summary: str = Field(description="One-paragraph summary")
    rating: int = Field(ge=1, le=5)
    highlights: List[str] = []
    reviewer: Optional[str] = None


# =============================================================================
# Construction
# =============================================================================


class TestCoerce:
    """Tests for building schemas from the accepted inputs."""

    def test_from_dict_uses_title(self):
        """A dict schema is named after its title."""
        assert ObjectSchema.coerce(ARTICLE_SCHEMA).name == "article"

    def test_explicit_name_wins(self):
        """An explicit name overrides the title."""
        assert ObjectSchema.coerce(ARTICLE_SCHEMA, name="post").name == "post"

    def test_from_model(self):
        """A pydantic model produces its JSON schema and keeps the model."""
        schema = ObjectSchema.coerce(Review)
        assert schema.name == "Review"
        assert schema.model is Review
        assert set(schema.required) == {"summary", "rating"}

    def test_passthrough(self):
        """An ObjectSchema is returned unchanged."""
        schema = ObjectSchema(ARTICLE_SCHEMA)
        assert ObjectSchema.coerce(schema) is schema

    def test_unsupported(self):
        """Other types are rejected."""
        with pytest.raises(ConfigurationError, match="Unsupported schema"):
            ObjectSchema.coerce(["not", "a", "schema"])

    def test_schema_copied(self):
        """Mutating the source dict does not affect the schema."""
        source = {"type": "object", "properties": {"a": {"type": "string"}}}
        schema = ObjectSchema(source)
        source["properties"]["b"] = {"type": "integer"}
        assert "b" not in schema.properties


# =============================================================================
# Introspection
# =============================================================================


class TestFields:
    """Tests for field descriptions used in prompts."""

    def test_types_and_constraints(self):
        """Types, requiredness and constraints are described."""
        fields = {spec.name: spec for spec in ObjectSchema(ARTICLE_SCHEMA).fields()}

        assert fields["title"].type == "string"
        assert fields["title"].required is True
        assert fields["title"].description == "Headline"
        assert fields["title"].constraints == ("at least 3 characters",)
        assert fields["score"].constraints == ("minimum 0", "maximum 10")
        assert fields["tags"].type == "array of string"
        assert fields["status"].type == "enum"
        assert fields["status"].constraints == ('one of: "draft", "published"',)
        assert fields["author"].required is False

    def test_nested_children(self):
        """Nested object properties are expanded."""
        author = {spec.name: spec for spec in ObjectSchema(ARTICLE_SCHEMA).fields()}["author"]
        assert [child.name for child in author.children] == ["name"]
        assert author.children[0].required is True

    def test_optional_model_field(self):
        """Optional[X] renders as X."""
        fields = {spec.name: spec for spec in ObjectSchema.from_model(Review).fields()}
        assert fields["reviewer"].type == "string"
        assert fields["rating"].type == "integer"

    def test_example(self):
        """The example instance follows the declared types."""
        example = ObjectSchema(ARTICLE_SCHEMA).example()
        assert example["title"] == "<title>"
        assert example["score"] == 0
        assert example["tags"] == ["<tags>"]
        assert example["status"] == "draft"
        assert example["author"] == {"name": "<name>"}


# =============================================================================
# Validation
# =============================================================================


class TestValidate:
    """Tests for validation reports."""

    def test_valid(self):
        """A conforming object produces a clean report."""
        report = ObjectSchema(ARTICLE_SCHEMA).validate({"title": "Hello", "score": 3, "tags": []})
        assert report.valid
        assert report.summary() == "valid"

    def test_missing_fields(self):
        """Absent required fields are reported as missing."""
        report = ObjectSchema(ARTICLE_SCHEMA).validate({"title": "Hello"})
        assert report.missing == ["score", "tags"]
        assert report.errors == []
        assert not report.valid

    def test_empty_fields(self):
        """Blank strings in required fields are reported as empty."""
        report = ObjectSchema(ARTICLE_SCHEMA).validate({"title": "   ", "score": 1, "tags": []})
        assert report.empty == ["title"]
        assert report.missing == []

    def test_type_errors(self):
        """Other violations are reported with their path."""
        report = ObjectSchema(ARTICLE_SCHEMA).validate({"title": "Hello", "score": 42, "tags": []})
        assert len(report.errors) == 1
        assert report.errors[0].startswith("score:")
        assert report.violating_fields == ["score"]

    def test_non_object_root(self):
        """A non-object value is a root-level error."""
        report = ObjectSchema(ARTICLE_SCHEMA).validate(["a"])
        assert report.errors[0].startswith("<root>:")

    def test_model_validation(self):
        """Model-backed schemas also run pydantic validation."""
        schema = ObjectSchema.from_model(Review)
        assert schema.validate({"summary": "Good", "rating": 4}).valid
        assert not schema.validate({"summary": "Good", "rating": 9}).valid

    def test_finalize(self):
        """finalize returns a model instance for model-backed schemas."""
        review = ObjectSchema.from_model(Review).finalize({"summary": "Good", "rating": 4})
        assert isinstance(review, Review)
        assert ObjectSchema(ARTICLE_SCHEMA).finalize({"a": 1}) == {"a": 1}


# =============================================================================
# Backfill
# =============================================================================


class TestBackfill:
    """Tests for placeholder backfill under the lenient policy."""

    def test_fills_missing_and_empty(self):
        """Missing and empty required fields get typed placeholders."""
        schema = ObjectSchema(ARTICLE_SCHEMA)
        patched, filled = schema.backfill({"title": "", "extra": True})

        assert filled == ["title", "score", "tags"]
        assert patched == {
            "title": "Default value for title",
            "score": 0,
            "tags": [],
            "extra": True,
        }
        assert schema.validate(patched).valid

    def test_present_values_kept(self):
        """Populated fields are left alone."""
        patched, filled = ObjectSchema(ARTICLE_SCHEMA).backfill({"title": "Hi", "score": 2, "tags": ["a"]})
        assert filled == []
        assert patched["title"] == "Hi"

    def test_default_and_enum_placeholders(self):
        """Schema defaults and the first enum value are preferred."""
        schema = ObjectSchema(
            {
                "type": "object",
                "properties": {
                    "lang": {"type": "string", "default": "en"},
                    "mode": {"enum": ["fast", "slow"]},
                },
                "required": ["lang", "mode"],
            }
        )
        patched, _ = schema.backfill({})
        assert patched == {"lang": "en", "mode": "fast"}
