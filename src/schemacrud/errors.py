"""
Error types for schema loading, record persistence, and queries.

Schema-authoring errors (``SchemaNotFound``, ``SchemaInvalid``,
``UnsupportedFieldType``) are never retried. Record-level errors carry enough
structure (field name, reason) for a client to render them.
"""

from __future__ import annotations

from typing import Any


class CrudError(Exception):
    """Base exception for all schemacrud errors."""

    error_type = "crud_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured representation for API responses."""
        return {"type": self.error_type, "detail": self.message}


# =============================================================================
# Schema Errors
# =============================================================================


class SchemaNotFound(CrudError):
    """Raised when no schema description exists for a model."""

    error_type = "schema_not_found"

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Schema not found for model: {model}")


class SchemaInvalid(CrudError):
    """
    Raised when a schema description fails validation.

    The message is qualified with the path of the offending element,
    e.g. ``fields.password.type``.
    """

    error_type = "schema_invalid"

    def __init__(self, model: str, path: str, reason: str):
        self.model = model
        self.path = path
        self.reason = reason
        location = f"{model}.{path}" if path else model
        super().__init__(f"Invalid schema '{location}': {reason}")


class UnsupportedFieldType(SchemaInvalid):
    """Raised when a field declares a type that is not registered."""

    error_type = "unsupported_field_type"

    def __init__(self, field_type: str, model: str = "", path: str = ""):
        self.field_type = field_type
        super().__init__(model, path, f"unsupported field type '{field_type}'")


# =============================================================================
# Record Errors
# =============================================================================


class FieldNotEditable(CrudError):
    """Raised when create/update receives an unknown or non-editable field."""

    error_type = "field_not_editable"

    def __init__(self, model: str, field: str, reason: str = "not editable"):
        self.model = model
        self.field = field
        self.reason = reason
        super().__init__(f"Field '{field}' of '{model}' is {reason}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        data["reason"] = self.reason
        return data


class RecordNotFound(CrudError):
    """Raised when a record cannot be found by its primary key."""

    error_type = "record_not_found"

    def __init__(self, model: str, record_id: Any):
        self.model = model
        self.record_id = record_id
        super().__init__(f"{model} record '{record_id}' not found")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["model"] = self.model
        data["id"] = self.record_id
        return data


class AlreadySoftDeleted(CrudError):
    """Raised when soft-deleting a record that is already marked deleted."""

    error_type = "already_soft_deleted"

    def __init__(self, model: str, record_id: Any):
        self.model = model
        self.record_id = record_id
        super().__init__(f"{model} record '{record_id}' is already deleted")


class ConstraintViolation(CrudError):
    """Raised when a database constraint (unique, FK) is violated."""

    error_type = "constraint_violation"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        constraint_type: str = "integrity",
    ):
        self.field = field
        self.constraint_type = constraint_type  # "unique" | "foreign_key" | "integrity"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["constraint_type"] = self.constraint_type
        if self.field:
            data["field"] = self.field
        return data


class ValidationFailed(CrudError):
    """
    Raised when submitted values fail schema validation.

    Attributes:
        errors: Mapping of field name to a list of failure reasons
    """

    error_type = "validation_failed"

    def __init__(self, model: str, errors: dict[str, list[str]]):
        self.model = model
        self.errors = errors
        fields = ", ".join(sorted(errors))
        super().__init__(f"Validation failed for {model}: {fields}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class StorageFailure(CrudError):
    """
    Raised for unexpected storage-engine errors.

    The public message is generic; the engine's own text is logged, never
    surfaced.
    """

    error_type = "storage_failure"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Storage operation '{operation}' failed")
