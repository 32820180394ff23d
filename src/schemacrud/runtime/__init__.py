"""
schemacrud runtime.

Example usage:
    >>> from schemacrud.runtime import create_crud_service, ListParams
    >>>
    >>> service = create_crud_service()
    >>> view = await service.get_schema("users", "list")
    >>> page = await service.list("users", ListParams(sorts={"user_name": "asc"}))

FastAPI hosts register error responses with
``schemacrud.runtime.exception_handlers.register_exception_handlers``.
"""

from schemacrud.runtime.crud_service import CrudService, create_crud_service
from schemacrud.runtime.field_types import FieldTypeHandler, FieldTypeRegistry
from schemacrud.runtime.logging import log_with_context, setup_logging
from schemacrud.runtime.query_builder import (
    ListParams,
    ListQuery,
    PagedResult,
    QueryBuilder,
)
from schemacrud.runtime.record import GenericRecord
from schemacrud.runtime.relation_resolver import RelationResolver
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_cache import SchemaCache
from schemacrud.runtime.schema_filter import (
    ContextView,
    QueryPermissions,
    SchemaFilter,
    filter_for_context,
)
from schemacrud.runtime.schema_loader import SchemaLoader

__all__ = [
    "ContextView",
    "CrudService",
    "DatabaseManager",
    "FieldTypeHandler",
    "FieldTypeRegistry",
    "GenericRecord",
    "ListParams",
    "ListQuery",
    "PagedResult",
    "QueryBuilder",
    "QueryPermissions",
    "RelationResolver",
    "SchemaCache",
    "SchemaFilter",
    "SchemaLoader",
    "create_crud_service",
    "filter_for_context",
    "log_with_context",
    "setup_logging",
]
