"""Shared pytest fixtures for schemacrud tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from schemacrud.config import CrudConfig
from schemacrud.runtime.crud_service import CrudService
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_cache import SchemaCache
from schemacrud.runtime.schema_filter import SchemaFilter
from schemacrud.runtime.schema_loader import SchemaLoader
from schemacrud.specs.schema import ModelSchema

# =============================================================================
# Schema Descriptions
# =============================================================================

GROUPS_SCHEMA: dict[str, Any] = {
    "model": "groups",
    "table": "groups",
    "title": "Groups",
    "singular_title": "Group",
    "primary_key": "id",
    "title_field": "name",
    "permissions": {
        "read": "uri_groups",
        "create": "create_group",
        "update": "update_group_field",
        "delete": "delete_group",
    },
    "default_sort": {"name": "asc"},
    "detail": {
        "model": "users",
        "foreign_key": "group_id",
        "list_fields": ["user_name", "email"],
    },
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "listable": True, "sortable": True},
        "slug": {
            "type": "string",
            "listable": True,
            "sortable": True,
            "filterable": True,
            "required": True,
            "validation": {"unique": True, "length": {"min": 1, "max": 50}},
        },
        "name": {
            "type": "string",
            "listable": True,
            "sortable": True,
            "filterable": True,
            "required": True,
        },
        "description": {"type": "text"},
    },
}

# Users deliberately have no filterable fields
USERS_SCHEMA: dict[str, Any] = {
    "model": "users",
    "table": "users",
    "title": "Users",
    "singular_title": "User",
    "soft_delete_column": "deleted_at",
    "permissions": {"read": "uri_users", "update": "update_user_field"},
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "listable": True, "sortable": True},
        "user_name": {
            "type": "string",
            "listable": True,
            "sortable": True,
            "required": True,
            "validation": {"length": {"min": 2, "max": 50}},
        },
        "email": {
            "type": "string",
            "listable": True,
            "sortable": True,
            "validation": {"email": True},
        },
        "password": {"type": "string", "listable": False, "editable": True},
        "group_id": {
            "type": "lookup",
            "listable": True,
            "lookup": {"model": "groups", "id": "id", "desc": "name"},
        },
    },
    "relationships": [
        {
            "name": "roles",
            "type": "many_to_many",
            "pivot_table": "role_users",
            "foreign_key": "user_id",
            "related_key": "role_id",
            "related_model": "roles",
        }
    ],
}

ROLES_SCHEMA: dict[str, Any] = {
    "model": "roles",
    "table": "roles",
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "listable": True},
        "slug": {"type": "string", "listable": True, "filterable": True},
        "name": {"type": "string", "listable": True},
    },
}

# One field per registered type
ITEMS_SCHEMA: dict[str, Any] = {
    "model": "items",
    "table": "items",
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "listable": True, "sortable": True},
        "quantity": {"type": "integer", "listable": True, "sortable": True, "filterable": True},
        "price": {"type": "decimal", "listable": True, "filterable": True},
        "weight": {"type": "float", "listable": True},
        "title": {"type": "string", "listable": True, "sortable": True, "filterable": True},
        "notes": {"type": "text"},
        "active": {"type": "boolean", "listable": True, "filterable": True},
        "released": {"type": "date", "listable": True, "filterable": True},
        "updated": {"type": "datetime", "listable": True},
        "meta": {"type": "json"},
        "group_id": {"type": "lookup", "lookup": {"model": "groups"}},
    },
}

SCHEMAS = {
    "groups": GROUPS_SCHEMA,
    "users": USERS_SCHEMA,
    "roles": ROLES_SCHEMA,
    "items": ITEMS_SCHEMA,
}


def write_schema(directory: Path, data: dict[str, Any], fmt: str = "json") -> Path:
    """Write a schema description as JSON or YAML."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{data['model']}.{fmt}"
    if fmt == "json":
        path.write_text(json.dumps(data), encoding="utf-8")
    else:
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


def create_table(
    db: DatabaseManager,
    schema: ModelSchema,
    registry: FieldTypeRegistry,
    unique: tuple[str, ...] = (),
) -> None:
    """Create a table from the schema's storage affinities."""
    columns = []
    for name, spec in schema.fields.items():
        affinity = registry.describe(spec.type).storage_affinity
        if name == schema.primary_key and spec.auto_generated:
            columns.append(f'"{name}" INTEGER PRIMARY KEY AUTOINCREMENT')
            continue
        column = f'"{name}" {affinity}'
        if name in unique:
            column += " UNIQUE"
        columns.append(column)
    if schema.soft_delete_column and schema.soft_delete_column not in schema.fields:
        columns.append(f'"{schema.soft_delete_column}" TEXT')

    with db.connection() as conn:
        conn.execute(f'CREATE TABLE IF NOT EXISTS "{schema.table}" ({", ".join(columns)})')


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def registry() -> FieldTypeRegistry:
    return FieldTypeRegistry()


@pytest.fixture
def schema_dir(tmp_path: Path) -> Path:
    """Schema directory with groups/roles/items as JSON and users as YAML."""
    directory = tmp_path / "schema" / "crud6"
    for name, data in SCHEMAS.items():
        write_schema(directory, data, "yaml" if name == "users" else "json")
    return directory


@pytest.fixture
def loader(schema_dir: Path, registry: FieldTypeRegistry) -> SchemaLoader:
    return SchemaLoader(schema_dir, registry)


@pytest.fixture
def cache(loader: SchemaLoader, registry: FieldTypeRegistry) -> SchemaCache:
    return SchemaCache(loader, SchemaFilter(registry))


@pytest.fixture
def db(tmp_path: Path, loader: SchemaLoader, registry: FieldTypeRegistry) -> DatabaseManager:
    """Database with one table per schema plus the role_users pivot table."""
    manager = DatabaseManager(tmp_path / "data" / "test.db")
    for name in SCHEMAS:
        schema = loader.load(name)
        create_table(manager, schema, registry, unique=("slug",) if name == "roles" else ())
    with manager.connection() as conn:
        conn.execute(
            'CREATE TABLE "role_users" ('
            '"user_id" INTEGER NOT NULL, "role_id" INTEGER NOT NULL, "created_at" TEXT, '
            'PRIMARY KEY ("user_id", "role_id"))'
        )
    return manager


@pytest.fixture
def config(tmp_path: Path, schema_dir: Path) -> CrudConfig:
    return CrudConfig(schema_path=schema_dir, db_path=tmp_path / "data" / "test.db")


@pytest.fixture
def service(cache: SchemaCache, db: DatabaseManager, config: CrudConfig) -> CrudService:
    return CrudService(cache, db, config)


@pytest.fixture
def groups_schema(loader: SchemaLoader) -> ModelSchema:
    return loader.load("groups")


@pytest.fixture
def users_schema(loader: SchemaLoader) -> ModelSchema:
    return loader.load("users")


@pytest.fixture
def items_schema(loader: SchemaLoader) -> ModelSchema:
    return loader.load("items")
