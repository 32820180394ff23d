"""
Exception handlers for FastAPI applications hosting schemacrud.

Maps the error taxonomy to JSON responses:
- SchemaNotFound, RecordNotFound: 404
- FieldNotEditable, ValidationFailed, ConstraintViolation: 422
- AlreadySoftDeleted: 409
- SchemaInvalid (incl. UnsupportedFieldType), StorageFailure: 500 with a
  generic body; the details are logged server-side
"""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import Response

logger = logging.getLogger(__name__)

GENERIC_ERROR_DETAIL = "Internal server error"


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register schemacrud exception handlers on a FastAPI application.

    Args:
        app: FastAPI application instance
    """
    from fastapi import Request
    from fastapi.responses import JSONResponse as _JSONResponse

    from schemacrud.errors import (
        AlreadySoftDeleted,
        ConstraintViolation,
        CrudError,
        FieldNotEditable,
        RecordNotFound,
        SchemaInvalid,
        SchemaNotFound,
        StorageFailure,
        ValidationFailed,
    )

    @app.exception_handler(SchemaNotFound)
    async def schema_not_found_handler(request: Request, exc: SchemaNotFound) -> Response:
        """Unknown model: 404 Not Found."""
        return _JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(RecordNotFound)
    async def record_not_found_handler(request: Request, exc: RecordNotFound) -> Response:
        """Missing record: 404 Not Found."""
        return _JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(FieldNotEditable)
    async def field_not_editable_handler(request: Request, exc: FieldNotEditable) -> Response:
        """Unknown or protected field in a write: 422 Unprocessable Entity."""
        return _JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(ValidationFailed)
    async def validation_failed_handler(request: Request, exc: ValidationFailed) -> Response:
        """Per-field validation failures: 422 Unprocessable Entity."""
        return _JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(ConstraintViolation)
    async def constraint_violation_handler(
        request: Request, exc: ConstraintViolation
    ) -> Response:
        """Convert database constraint violations to 422 Unprocessable Entity."""
        return _JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(AlreadySoftDeleted)
    async def already_deleted_handler(request: Request, exc: AlreadySoftDeleted) -> Response:
        """Soft delete of a deleted record: 409 Conflict."""
        return _JSONResponse(status_code=409, content=exc.to_dict())

    @app.exception_handler(SchemaInvalid)
    async def schema_invalid_handler(request: Request, exc: SchemaInvalid) -> Response:
        """Schema authoring errors are server faults."""
        logger.error(f"Schema error while handling {request.url.path}: {exc}")
        return _JSONResponse(
            status_code=500,
            content={"type": "internal_error", "detail": GENERIC_ERROR_DETAIL},
        )

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(request: Request, exc: StorageFailure) -> Response:
        """Storage errors never expose engine text."""
        logger.error(f"Storage failure while handling {request.url.path}: {exc}")
        return _JSONResponse(
            status_code=500,
            content={"type": "internal_error", "detail": GENERIC_ERROR_DETAIL},
        )

    @app.exception_handler(CrudError)
    async def crud_error_handler(request: Request, exc: CrudError) -> Response:
        """Fallback for other schemacrud errors: 400 Bad Request."""
        return _JSONResponse(status_code=400, content=exc.to_dict())
