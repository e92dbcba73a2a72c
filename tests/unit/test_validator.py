"""
Unit tests for payload validation.

Tests cover:
- Flat schemas (required fields, types, unknown fields)
- JSON Schema payloads (constraints, nested paths, defaults, $ref)
- Strict vs non-strict handling of undeclared fields
- Schema well-formedness checks
"""

import pytest

from artdb.errors import ErrorKind, SchemaDefinitionError, ValidationError
from artdb.schema.types import FlatType, canonical_json, content_hash, is_flat_schema
from artdb.schema.validator import SchemaValidator


def kinds_by_field(errors):
    """Map field path to error kind."""
    return {e.field: e.kind for e in errors}


class TestFlatSchema:
    """Tests for the {field: typeName} dialect."""

    @pytest.fixture
    def validator(self):
        return SchemaValidator()

    @pytest.fixture
    def schema(self):
        return {"title": "string", "count": "integer", "score": "float", "done": "boolean"}

    def test_valid_payload(self, validator, schema):
        """Payload matching every declared field passes."""
        data = {"title": "a", "count": 1, "score": 2.5, "done": False}
        assert validator.validate(data, schema) == []

    def test_all_violations_reported(self, validator, schema):
        """Missing, mistyped and unknown fields are all reported at once."""
        data = {"count": "one", "score": 1, "done": True, "extra": 1}

        errors = validator.validate(data, schema)

        assert kinds_by_field(errors) == {
            "title": ErrorKind.MISSING,
            "count": ErrorKind.TYPE,
            "extra": ErrorKind.UNKNOWN,
        }

    def test_errors_follow_declared_order(self, validator, schema):
        """Declared fields come first, unknown fields last and sorted."""
        data = {"zeta": 1, "alpha": 2}

        errors = validator.validate(data, schema)

        assert [e.field for e in errors] == ["title", "count", "score", "done", "alpha", "zeta"]

    def test_unknown_field_suggestion(self, validator, schema):
        """Unknown fields close to a declared name get a suggestion."""
        data = {"title": "a", "count": 1, "score": 1.0, "done": True, "titel": "b"}

        errors = validator.validate(data, schema)

        assert errors[0].message == "unknown field (did you mean: title?)"

    def test_type_message(self, validator, schema):
        """Type errors name the expected and actual type."""
        errors = validator.validate({"title": 5, "count": 1, "score": 1.0, "done": True}, schema)

        assert len(errors) == 1
        assert errors[0].message == "expected string, got integer"

    def test_boolean_is_not_integer(self, validator):
        """Booleans do not satisfy integer or number fields."""
        errors = validator.validate({"n": True}, {"n": "integer"})
        assert kinds_by_field(errors) == {"n": ErrorKind.TYPE}

    def test_float_accepts_integer(self, validator):
        """Integers satisfy float and number fields."""
        assert validator.validate({"a": 3, "b": 4}, {"a": "float", "b": "number"}) == []

    def test_any_accepts_null(self, validator):
        """The any type accepts every JSON value."""
        assert validator.validate({"a": None}, {"a": "any"}) == []

    def test_non_strict_allows_unknown(self, validator, schema):
        """Undeclared fields pass through when strict is off."""
        data = {"title": "a", "count": 1, "score": 2.5, "done": False, "extra": [1]}

        result = validator.check(data, schema, strict=False)

        assert result.ok
        assert result.data["extra"] == [1]

    def test_non_object_payload(self, validator, schema):
        """A payload that is not an object is rejected at the root."""
        errors = validator.validate(["a"], schema)

        assert len(errors) == 1
        assert errors[0].field == ""
        assert errors[0].kind == ErrorKind.TYPE


class TestStructuredSchema:
    """Tests for JSON Schema payloads."""

    @pytest.fixture
    def validator(self):
        return SchemaValidator()

    @pytest.fixture
    def schema(self):
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string", "minLength": 1},
                "priority": {"type": "integer", "minimum": 1, "maximum": 5, "default": 3},
                "status": {"enum": ["open", "closed"], "default": "open"},
                "owner": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "email": {"type": "string"},
                    },
                    "required": ["name"],
                },
            },
            "required": ["title"],
            "additionalProperties": False,
        }

    def test_valid_payload(self, validator, schema):
        """Payload satisfying the schema passes."""
        assert validator.validate({"title": "x", "priority": 2}, schema) == []

    def test_all_violations_reported(self, validator, schema):
        """Every violation is reported with its category."""
        data = {"priority": 9, "status": "bogus", "extra": True}

        errors = validator.validate(data, schema)

        assert kinds_by_field(errors) == {
            "title": ErrorKind.MISSING,
            "priority": ErrorKind.CONSTRAINT,
            "status": ErrorKind.CONSTRAINT,
            "extra": ErrorKind.UNKNOWN,
        }

    def test_nested_paths(self, validator, schema):
        """Nested violations carry a dotted field path."""
        data = {"title": "x", "owner": {"email": 5}}

        errors = validator.validate(data, schema)

        assert kinds_by_field(errors) == {
            "owner.name": ErrorKind.MISSING,
            "owner.email": ErrorKind.TYPE,
        }

    def test_error_order_is_deterministic(self, validator, schema):
        """The same payload always yields the same error list."""
        data = {"priority": "high", "status": "bogus", "zzz": 1, "aaa": 2}

        first = validator.validate(data, schema)
        second = validator.validate(dict(reversed(list(data.items()))), schema)

        assert first == second

    def test_non_strict_drops_unknown_only(self, validator, schema):
        """Non-strict mode drops unknown-field errors but keeps the rest."""
        data = {"title": "x", "priority": 0, "extra": 1}

        errors = validator.validate(data, schema, strict=False)

        assert kinds_by_field(errors) == {"priority": ErrorKind.CONSTRAINT}

    def test_defaults_applied(self, validator, schema):
        """Absent properties receive their declared defaults."""
        result = validator.check({"title": "x"}, schema)

        assert result.ok
        assert result.data == {"title": "x", "priority": 3, "status": "open"}

    def test_defaults_do_not_override(self, validator, schema):
        """Present values win over defaults."""
        result = validator.check({"title": "x", "priority": 5}, schema)
        assert result.data["priority"] == 5

    def test_defaults_satisfy_required(self, validator):
        """Defaults are applied before the required check."""
        schema = {
            "type": "object",
            "properties": {"state": {"type": "string", "default": "new"}},
            "required": ["state"],
        }

        result = validator.check({}, schema)

        assert result.ok
        assert result.data == {"state": "new"}

    def test_defaults_through_ref(self, validator):
        """Defaults are found behind local $ref pointers."""
        schema = {
            "type": "object",
            "$defs": {
                "address": {
                    "type": "object",
                    "properties": {"country": {"type": "string", "default": "NL"}},
                }
            },
            "properties": {"address": {"$ref": "#/$defs/address"}},
        }

        result = validator.check({"address": {"city": "Utrecht"}}, schema)

        assert result.data == {"address": {"city": "Utrecht", "country": "NL"}}

    def test_default_values_are_copied(self, validator):
        """Mutable defaults are not shared between payloads."""
        schema = {"type": "object", "properties": {"tags": {"type": "array", "default": []}}}

        first = validator.apply_defaults({}, schema)
        first["tags"].append("x")
        second = validator.apply_defaults({}, schema)

        assert second["tags"] == []

    def test_apply_defaults_leaves_input_alone(self, validator, schema):
        """apply_defaults returns a new dict."""
        data = {"title": "x"}
        validator.apply_defaults(data, schema)
        assert data == {"title": "x"}

    def test_empty_schema_accepts_anything(self, validator):
        """An empty schema accepts any object."""
        assert validator.validate({"anything": [1, 2]}, {}) == []


class TestRequiredWithDefault:
    """A required string next to an integer with a default."""

    @pytest.fixture
    def schema(self):
        return {
            "type": "object",
            "properties": {
                "title": {"type": "string"},
                "count": {"type": "integer", "default": 0},
            },
            "required": ["title"],
        }

    def test_default_filled_in(self, schema):
        """{title: "x"} is accepted and count becomes 0."""
        result = SchemaValidator().check({"title": "x"}, schema)

        assert result.ok
        assert result.data == {"title": "x", "count": 0}

    def test_wrong_type_single_error(self, schema):
        """{title: 123} yields exactly one error, naming title."""
        result = SchemaValidator().check({"title": 123}, schema)

        assert [(e.field, e.kind) for e in result.errors] == [("title", ErrorKind.TYPE)]

    def test_missing_required_single_error(self, schema):
        """{count: 1} yields exactly one error, for the missing title."""
        result = SchemaValidator().check({"count": 1}, schema)

        assert [(e.field, e.kind) for e in result.errors] == [("title", ErrorKind.MISSING)]


class TestValidationResult:
    """Tests for ValidationResult."""

    def test_raise_if_invalid(self):
        """A failed result raises one error carrying every violation."""
        result = SchemaValidator().check({"count": "x"}, {"title": "string", "count": "integer"})

        assert not result.ok
        with pytest.raises(ValidationError) as exc_info:
            result.raise_if_invalid("memo")

        assert exc_info.value.fields == ["title", "count"]
        assert exc_info.value.details["kind"] == "memo"

    def test_ok_returns_data(self):
        """A successful result returns the defaulted payload."""
        result = SchemaValidator().check({"title": "x"}, {"title": "string"})
        assert result.raise_if_invalid() == {"title": "x"}


class TestCheckSchema:
    """Tests for schema well-formedness checks."""

    @pytest.fixture
    def validator(self):
        return SchemaValidator()

    def test_valid_flat(self, validator):
        """Known flat type names are accepted."""
        validator.check_schema({"a": "string", "b": "any"})

    def test_unknown_flat_type(self, validator):
        """Unknown flat type names are rejected."""
        with pytest.raises(SchemaDefinitionError) as exc_info:
            validator.check_schema({"a": "strng", "b": "integer"})
        assert len(exc_info.value.errors) == 1

    def test_invalid_json_schema(self, validator):
        """Schemas that fail the meta-schema are rejected."""
        with pytest.raises(SchemaDefinitionError):
            validator.check_schema({"type": "object", "properties": {"a": {"type": "nope"}}})

    def test_non_object_schema(self, validator):
        """A schema must be a JSON object."""
        with pytest.raises(SchemaDefinitionError):
            validator.check_schema(["string"])


class TestSchemaTypes:
    """Tests for dialect detection and hashing helpers."""

    def test_flat_detection(self):
        """Flat schemas are string-valued maps without JSON Schema keywords."""
        assert is_flat_schema({"title": "string"})
        assert not is_flat_schema({})
        assert not is_flat_schema({"type": "object"})
        assert not is_flat_schema({"properties": {}})
        assert not is_flat_schema({"title": {"type": "string"}})

    def test_hash_ignores_key_order(self):
        """Hashes are computed over sorted keys."""
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})
        assert content_hash({"a": 1}).startswith("sha256:")

    def test_flat_type_from_str(self):
        """Unknown type names raise ValueError."""
        assert FlatType.from_str("number") is FlatType.NUMBER
        with pytest.raises(ValueError):
            FlatType.from_str("decimal")

    def test_canonical_json_refuses_non_finite(self):
        """NaN and infinities have no JSON encoding."""
        assert canonical_json({"b": 1, "a": [1.5]}) == '{"a":[1.5],"b":1}'
        with pytest.raises(ValueError):
            canonical_json({"score": float("nan")})
        with pytest.raises(ValueError):
            content_hash({"score": float("inf")})
