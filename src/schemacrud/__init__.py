"""
schemacrud - schema-driven generic CRUD and query engine.

A declarative model description (a "schema") becomes a data-access layer:
table binding, field-type coercion, validation, context-scoped schema views
(list/form/detail/meta), cached schema resolution, and relationship
traversal, without per-model code.

This package provides:
- ModelSchema / FieldSpec: canonical schema types
- SchemaLoader / SchemaCache / SchemaFilter: loading, caching, and views
- GenericRecord / ListQuery: persistence and listing
- CrudService: facade for a routing layer
"""

__version__ = "0.1.0"

from schemacrud.runtime.crud_service import CrudService, create_crud_service
from schemacrud.specs.schema import ModelSchema

__all__ = ["CrudService", "ModelSchema", "create_crud_service"]
