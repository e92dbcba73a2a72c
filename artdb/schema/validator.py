"""
Payload validation for ArtDB.

Two schema dialects are supported:
- Flat: ``{field: typeName}`` over the FlatType vocabulary. Every declared
  field is required; undeclared fields are rejected in strict mode.
- Structured: JSON Schema (Draft 2020-12) checked with ``jsonschema``.

Invariants:
    - Validation never stops at the first failure; every violation is reported
    - Defaults are applied before the required-field check
    - Error order is deterministic for a given payload and schema
    - Non-strict mode only drops unknown-field errors, never type or
      constraint errors
"""

from __future__ import annotations

import copy
import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from difflib import get_close_matches
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as JsonSchemaError
from jsonschema.exceptions import SchemaError as JsonSchemaDefinitionError

from ..errors import ErrorKind, FieldError, SchemaDefinitionError, ValidationError
from .types import FlatType, content_hash, is_flat_schema, json_type_name

logger = logging.getLogger(__name__)

# Upper bound on chained local $ref hops while resolving defaults.
_MAX_REF_DEPTH = 32


@dataclass
class ValidationResult:
    """Outcome of checking one payload.

    Attributes:
        data: Payload with schema defaults applied
        errors: Every violation found (empty on success)
    """

    data: dict[str, Any]
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_if_invalid(self, kind: str | None = None) -> dict[str, Any]:
        """Return the defaulted data, or raise one aggregated ValidationError."""
        if self.errors:
            raise ValidationError(self.errors, kind=kind)
        return self.data


def _join(path: str, name: Any) -> str:
    name = str(name)
    return f"{path}.{name}" if path else name


def _path_of(error: JsonSchemaError) -> str:
    return ".".join(str(p) for p in error.absolute_path)


def _unknown(path: str, name: str, known: Any) -> FieldError:
    suggestions = get_close_matches(name, [str(k) for k in known], n=3)
    message = "unknown field"
    if suggestions:
        message += f" (did you mean: {', '.join(suggestions)}?)"
    return FieldError(_join(path, name), message, ErrorKind.UNKNOWN)


class SchemaValidator:
    """Validates payloads against registered schemas.

    Compiled ``jsonschema`` validators are cached by schema fingerprint, so
    repeated writes of the same kind do not recompile.

    Example:
        >>> validator = SchemaValidator()
        >>> result = validator.check({"title": "x"}, {
        ...     "type": "object",
        ...     "properties": {
        ...         "title": {"type": "string"},
        ...         "count": {"type": "integer", "default": 0},
        ...     },
        ...     "required": ["title"],
        ... })
        >>> result.ok, result.data
        (True, {'title': 'x', 'count': 0})
    """

    def __init__(self) -> None:
        self._compiled: dict[str, Draft202012Validator] = {}

    # -- Schema definitions --

    def check_schema(self, schema: Any) -> None:
        """Verify that a schema document is well formed.

        Raises:
            SchemaDefinitionError: If the schema cannot be used for validation
        """
        if is_flat_schema(schema):
            problems = []
            for name, type_name in schema.items():
                try:
                    FlatType.from_str(type_name)
                except ValueError as e:
                    problems.append(f"{name}: {e}")
            if problems:
                raise SchemaDefinitionError(
                    f"Invalid flat schema: {'; '.join(problems)}", errors=problems
                )
            return

        if not isinstance(schema, (dict, bool)):
            raise SchemaDefinitionError(
                f"Schema must be a JSON object, got {json_type_name(schema)}"
            )
        try:
            Draft202012Validator.check_schema(schema)
        except JsonSchemaDefinitionError as e:
            raise SchemaDefinitionError(f"Invalid JSON Schema: {e.message}", errors=[e.message]) from e

    def _compiled_for(self, schema: Any) -> Draft202012Validator:
        key = content_hash(schema)
        compiled = self._compiled.get(key)
        if compiled is None:
            compiled = Draft202012Validator(
                schema, format_checker=Draft202012Validator.FORMAT_CHECKER
            )
            self._compiled[key] = compiled
        return compiled

    # -- Defaults --

    def apply_defaults(self, data: dict[str, Any], schema: Any) -> dict[str, Any]:
        """Fill declared-but-absent properties with their schema defaults.

        Recurses into nested objects that are present in ``data``. The input
        is not modified.

        Args:
            data: Candidate payload
            schema: Schema document (flat schemas declare no defaults)

        Returns:
            A new dictionary with defaults filled in
        """
        if not isinstance(data, dict):
            return data
        if is_flat_schema(schema) or not isinstance(schema, dict):
            return dict(data)
        return self._apply_property_defaults(data, schema, schema)

    def _apply_property_defaults(
        self, data: dict[str, Any], schema: dict[str, Any], root: dict[str, Any]
    ) -> dict[str, Any]:
        schema = self._resolve(schema, root)
        props = schema.get("properties")
        if not isinstance(props, dict):
            return dict(data)

        result = dict(data)
        for key, child in props.items():
            child = self._resolve(child, root)
            if not isinstance(child, dict):
                continue
            if key in result:
                if isinstance(result[key], dict) and "properties" in child:
                    result[key] = self._apply_property_defaults(result[key], child, root)
            elif "default" in child:
                result[key] = copy.deepcopy(child["default"])
        return result

    def _resolve(self, schema: Any, root: dict[str, Any]) -> Any:
        """Follow local ``#/...`` references; sibling keywords win over the target."""
        for _ in range(_MAX_REF_DEPTH):
            if not isinstance(schema, dict):
                return schema
            ref = schema.get("$ref")
            if not isinstance(ref, str) or not ref.startswith("#"):
                return schema
            target: Any = root
            for part in ref.lstrip("#").strip("/").split("/"):
                if not part:
                    continue
                part = part.replace("~1", "/").replace("~0", "~")
                if not isinstance(target, dict) or part not in target:
                    return schema
                target = target[part]
            if not isinstance(target, dict):
                return schema
            siblings = {k: v for k, v in schema.items() if k != "$ref"}
            schema = {**target, **siblings}
        return schema

    # -- Validation --

    def validate(
        self,
        data: Any,
        schema: Any,
        strict: bool = True,
    ) -> list[FieldError]:
        """Validate a payload and return every violation.

        Args:
            data: Candidate payload (must be a JSON object)
            schema: Flat or structured schema document
            strict: Reject undeclared fields. When False every unknown-field
                error is dropped, including those a structured schema raises
                through its own "additionalProperties": false

        Returns:
            List of field errors; empty means valid
        """
        if not isinstance(data, dict):
            return [
                FieldError("", f"expected object, got {json_type_name(data)}", ErrorKind.TYPE)
            ]

        if is_flat_schema(schema):
            errors = list(self._validate_flat(data, schema, strict))
        else:
            errors = self._validate_structured(data, schema)
            if not strict:
                errors = [e for e in errors if e.kind is not ErrorKind.UNKNOWN]

        if errors:
            logger.debug(
                "Payload rejected",
                extra={"error_count": len(errors), "fields": [e.field for e in errors]},
            )
        return errors

    def check(
        self,
        data: Any,
        schema: Any,
        strict: bool = True,
    ) -> ValidationResult:
        """Apply defaults, then validate.

        Returns:
            ValidationResult with the defaulted payload and all errors
        """
        defaulted = self.apply_defaults(data, schema)
        return ValidationResult(data=defaulted, errors=self.validate(defaulted, schema, strict))

    def _validate_flat(
        self,
        data: dict[str, Any],
        schema: dict[str, str],
        strict: bool,
    ) -> Iterator[FieldError]:
        for name, type_name in schema.items():
            try:
                expected = FlatType.from_str(type_name)
            except ValueError as e:
                raise SchemaDefinitionError(str(e)) from e

            if name not in data:
                yield FieldError(name, "required field missing", ErrorKind.MISSING)
            elif not expected.accepts(data[name]):
                yield FieldError(
                    name,
                    f"expected {expected.value}, got {json_type_name(data[name])}",
                    ErrorKind.TYPE,
                )

        if strict:
            for name in sorted(set(data) - set(schema)):
                yield _unknown("", name, schema)

    def _validate_structured(self, data: dict[str, Any], schema: Any) -> list[FieldError]:
        compiled = self._compiled_for(schema)
        raw = sorted(
            compiled.iter_errors(data),
            key=lambda e: ([str(p) for p in e.absolute_path], str(e.validator)),
        )

        errors: list[FieldError] = []
        seen = set()
        for error in raw:
            for field_error in self._convert(error):
                key = (field_error.field, field_error.kind, field_error.message)
                if key not in seen:
                    seen.add(key)
                    errors.append(field_error)
        return errors

    def _convert(self, error: JsonSchemaError) -> Iterator[FieldError]:
        """Translate one jsonschema error into field errors."""
        path = _path_of(error)
        instance = error.instance

        if error.validator == "required" and isinstance(instance, dict):
            for name in error.validator_value:
                if name not in instance:
                    yield FieldError(_join(path, name), "required field missing", ErrorKind.MISSING)
            return

        if (
            error.validator == "additionalProperties"
            and error.validator_value is False
            and isinstance(instance, dict)
        ):
            declared = error.schema.get("properties", {}) if isinstance(error.schema, dict) else {}
            patterns = (
                error.schema.get("patternProperties", {}) if isinstance(error.schema, dict) else {}
            )
            for name in sorted(instance):
                if name in declared or any(re.search(p, name) for p in patterns):
                    continue
                yield _unknown(path, name, declared)
            return

        if error.validator == "type":
            expected = error.validator_value
            if isinstance(expected, list):
                expected = " or ".join(expected)
            yield FieldError(
                path, f"expected {expected}, got {json_type_name(instance)}", ErrorKind.TYPE
            )
            return

        yield FieldError(path, error.message, ErrorKind.CONSTRAINT)
