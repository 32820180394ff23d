"""
Canonical schema type definitions.

This module exports all schema types.
"""

from schemacrud.specs.schema import (
    DetailSpec,
    FieldSpec,
    FilterOperator,
    LookupSpec,
    ModelSchema,
    RelationshipSpec,
    soft_delete_column_of,
)

__all__ = [
    "DetailSpec",
    "FieldSpec",
    "FilterOperator",
    "LookupSpec",
    "ModelSchema",
    "RelationshipSpec",
    "soft_delete_column_of",
]
