"""
Unit tests for ArtDB error types.
"""

from artdb.errors import (
    ArtDbError,
    ErrorKind,
    FieldError,
    InvalidSlugError,
    Rollback,
    SupersededConflictError,
    UnknownKindError,
    ValidationError,
)


class TestValidationError:
    """Tests for ValidationError."""

    def test_carries_every_error(self):
        """The message and details list every violation."""
        errors = [
            FieldError("title", "required field missing", ErrorKind.MISSING),
            FieldError("count", "expected integer, got string", ErrorKind.TYPE),
        ]

        exc = ValidationError(errors, kind="memo")

        assert exc.code == "VALIDATION_ERROR"
        assert exc.fields == ["title", "count"]
        assert "title: required field missing" in exc.message
        assert "count: expected integer, got string" in exc.message
        assert exc.details["errors"][1] == {
            "field": "count",
            "message": "expected integer, got string",
            "kind": "type",
        }

    def test_root_field_label(self):
        """Root-level errors are labelled in messages."""
        assert str(FieldError("", "expected object, got array")) == "(root): expected object, got array"


class TestErrorHierarchy:
    """Tests for the error hierarchy."""

    def test_all_errors_share_base(self):
        """Store errors inherit from ArtDbError."""
        assert isinstance(UnknownKindError("memo"), ArtDbError)
        assert isinstance(SupersededConflictError(1, 2), ArtDbError)
        assert isinstance(InvalidSlugError("M0"), ArtDbError)

    def test_rollback_is_not_an_error(self):
        """Rollback is a control signal outside the error hierarchy."""
        assert not issubclass(Rollback, ArtDbError)

    def test_unknown_kind_label(self):
        """Plugin-qualified lookups name both parts."""
        exc = UnknownKindError("note", plugin="blog")
        assert exc.message == "Unknown artifact kind: blog/note"
        assert exc.details == {"kind": "note", "plugin": "blog"}

    def test_invalid_slug_details(self):
        """The offending slug is kept for callers."""
        exc = InvalidSlugError("X9")
        assert exc.code == "INVALID_SLUG"
        assert exc.slug == "X9"
        assert exc.details == {"slug": "X9"}
