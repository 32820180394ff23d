"""
Generic record bound to a model schema.

One ``GenericRecord`` class serves every model: the schema supplies the
table, primary key, soft-delete column, and field types. Writes run inside a
scoped transaction (``DatabaseManager.transaction``).

Soft delete is enabled only when the schema names a non-blank soft-delete
column. Every soft-delete call site goes through ``soft_delete_column_of``,
so a column that is absent and one that is an empty string behave the same.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Any
from urllib.parse import urlparse

from schemacrud.errors import (
    AlreadySoftDeleted,
    FieldNotEditable,
    RecordNotFound,
    ValidationFailed,
)
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.runtime.query_builder import active_row_clause, quote_identifier
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.specs.schema import FieldSpec, ModelSchema, soft_delete_column_of

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def is_deleted_marker(value: Any) -> bool:
    """A stored soft-delete marker counts only when it is neither NULL nor ''."""
    return value is not None and value != ""


# =============================================================================
# Validation
# =============================================================================


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def check_rules(spec: FieldSpec, value: Any, rules: dict[str, Any]) -> list[str]:
    """
    Check a coerced value against structured validation rules.

    ``unique`` is not handled here; it needs storage access.
    """
    errors: list[str] = []
    if rules.get("required") or spec.required:
        if _is_blank(value):
            return ["is required"]
    if value is None:
        return errors

    length = rules.get("length")
    if isinstance(length, dict) and isinstance(value, str):
        if length.get("min") is not None and len(value) < int(length["min"]):
            errors.append(f"must be at least {length['min']} characters")
        if length.get("max") is not None and len(value) > int(length["max"]):
            errors.append(f"must be at most {length['max']} characters")

    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        if rules.get("min") is not None and value < rules["min"]:
            errors.append(f"must be at least {rules['min']}")
        if rules.get("max") is not None and value > rules["max"]:
            errors.append(f"must be at most {rules['max']}")

    pattern = rules.get("regex") or rules.get("pattern")
    if pattern and isinstance(value, str):
        if isinstance(pattern, dict):
            pattern = pattern.get("regex") or pattern.get("pattern")
        if pattern and re.search(pattern, value) is None:
            errors.append("has an invalid format")

    if rules.get("email") and isinstance(value, str) and not _EMAIL_PATTERN.match(value):
        errors.append("must be a valid email address")

    if rules.get("url") and isinstance(value, str):
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append("must be a valid URL")

    allowed = rules.get("in")
    if isinstance(allowed, (list, tuple)) and value not in allowed:
        errors.append(f"must be one of: {', '.join(str(v) for v in allowed)}")

    return errors


# =============================================================================
# Generic Record
# =============================================================================


class GenericRecord:
    """
    Runtime-configured data record.

    Example:
        record = GenericRecord(schema, db, registry)
        await record.create({"user_name": "john", "email": "john@example.com"})
        same = await GenericRecord(schema, db, registry).find(record.id)
        await same.soft_delete()
    """

    def __init__(
        self,
        schema: ModelSchema,
        db: DatabaseManager,
        registry: FieldTypeRegistry | None = None,
        values: dict[str, Any] | None = None,
    ):
        self.schema = schema
        self.db = db
        self.registry = registry or FieldTypeRegistry()
        self.values: dict[str, Any] = dict(values or {})
        self.exists = False

    def __repr__(self) -> str:
        return f"<GenericRecord {self.schema.model}#{self.id}>"

    @property
    def table(self) -> str:
        return self.schema.table

    @property
    def primary_key(self) -> str:
        return self.schema.primary_key

    @property
    def id(self) -> Any:
        return self.values.get(self.primary_key)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.values)

    # =========================================================================
    # Soft-delete state
    # =========================================================================

    def has_soft_deletes(self) -> bool:
        return soft_delete_column_of(self.schema) is not None

    def is_soft_deleted(self) -> bool:
        column = soft_delete_column_of(self.schema)
        if column is None:
            return False
        return is_deleted_marker(self.values.get(column))

    # =========================================================================
    # Reads
    # =========================================================================

    async def find(self, record_id: Any, with_deleted: bool = False) -> GenericRecord:
        """
        Load a record by primary key.

        Soft-deleted rows are excluded unless ``with_deleted`` is set.

        Raises:
            RecordNotFound: No (visible) row has that key
        """
        pk_spec = self.schema.fields[self.primary_key]
        key = self.registry.to_storage(pk_spec.type, self._coerce_key(record_id))

        with self.db.transaction("find", self.table) as conn:
            row = self._select_row(conn, key, with_deleted)

        if row is None:
            raise RecordNotFound(self.schema.model, record_id)
        return self._bound(row)

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, values: dict[str, Any]) -> GenericRecord:
        """
        Insert a new row from ``values`` and bind this record to it.

        Raises:
            FieldNotEditable: Unknown or non-editable key
            ValidationFailed: Coercion or rule failures
            ConstraintViolation: Storage constraint failure
        """
        coerced = self._coerce_values(values)
        errors: dict[str, list[str]] = {}
        for name, spec in self.schema.fields.items():
            if name not in coerced and spec.editable and spec.default is not None:
                coerced[name] = self._coerce_one(spec, spec.default, errors)

        for name, spec in self.schema.fields.items():
            if not spec.editable:
                continue
            reasons = check_rules(spec, coerced.get(name), self._rules(spec))
            if reasons:
                errors[name] = reasons
        if errors:
            raise ValidationFailed(self.schema.model, errors)

        storage = self._to_storage(coerced)
        table = quote_identifier(self.table, "table name")
        if storage:
            columns = ", ".join(quote_identifier(name) for name in storage)
            placeholders = ", ".join("?" * len(storage))
            sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES"

        with self.db.transaction("create", self.table) as conn:
            self._check_unique(conn, coerced, exclude_id=None)
            cursor = conn.execute(sql, list(storage.values()))
            key = storage.get(self.primary_key, cursor.lastrowid)
            row = self._select_row(conn, key, with_deleted=True)

        logger.debug(f"Created {self.schema.model} record {key}")
        self._bind_row(row)
        return self

    async def update(self, values: dict[str, Any]) -> GenericRecord:
        """
        Update the bound row with ``values`` (partial update).

        Raises:
            RecordNotFound: The record is not persisted
            FieldNotEditable / ValidationFailed / ConstraintViolation
        """
        self._require_persisted()
        coerced = self._coerce_values(values)

        errors: dict[str, list[str]] = {}
        for name, value in coerced.items():
            spec = self.schema.fields[name]
            reasons = check_rules(spec, value, self._rules(spec))
            if reasons:
                errors[name] = reasons
        if errors:
            raise ValidationFailed(self.schema.model, errors)
        if not coerced:
            return self

        storage = self._to_storage(coerced)
        assignments = ", ".join(f"{quote_identifier(name)} = ?" for name in storage)
        sql = (
            f"UPDATE {quote_identifier(self.table, 'table name')} SET {assignments} "
            f"WHERE {quote_identifier(self.primary_key)} = ?"
        )
        key = self._storage_key()

        with self.db.transaction("update", self.table) as conn:
            self._check_unique(conn, coerced, exclude_id=key)
            cursor = conn.execute(sql, [*storage.values(), key])
            if cursor.rowcount == 0:
                raise RecordNotFound(self.schema.model, self.id)
            row = self._select_row(conn, key, with_deleted=True)

        self._bind_row(row)
        return self

    async def soft_delete(self) -> bool:
        """
        Mark the record deleted.

        Returns:
            False (no-op) when the schema has soft delete disabled

        Raises:
            AlreadySoftDeleted: The record is already marked
        """
        column = soft_delete_column_of(self.schema)
        if column is None:
            logger.debug(f"Soft delete disabled for {self.schema.model}; soft_delete is a no-op")
            return False
        self._require_persisted()
        if self.is_soft_deleted():
            raise AlreadySoftDeleted(self.schema.model, self.id)

        marker = datetime.now().isoformat(sep=" ", timespec="seconds")
        await self._set_marker(column, marker, "soft_delete")
        return True

    async def restore(self) -> bool:
        """
        Clear the soft-delete marker.

        Returns:
            False when soft delete is disabled or the record is not deleted
        """
        column = soft_delete_column_of(self.schema)
        if column is None:
            logger.debug(f"Soft delete disabled for {self.schema.model}; restore is a no-op")
            return False
        self._require_persisted()
        if not self.is_soft_deleted():
            return False

        await self._set_marker(column, None, "restore")
        return True

    async def delete(self) -> bool:
        """Soft delete when enabled, hard delete otherwise."""
        if self.has_soft_deletes():
            return await self.soft_delete()
        return await self.hard_delete()

    async def hard_delete(self) -> bool:
        """Remove the row. Returns False if it no longer exists."""
        self._require_persisted()
        sql = (
            f"DELETE FROM {quote_identifier(self.table, 'table name')} "
            f"WHERE {quote_identifier(self.primary_key)} = ?"
        )
        with self.db.transaction("delete", self.table) as conn:
            cursor = conn.execute(sql, (self._storage_key(),))
            deleted = cursor.rowcount > 0
        self.exists = False
        return deleted

    # =========================================================================
    # Internals
    # =========================================================================

    def _bound(self, row: sqlite3.Row) -> GenericRecord:
        record = GenericRecord(self.schema, self.db, self.registry)
        record._bind_row(row)
        return record

    def _bind_row(self, row: sqlite3.Row | None) -> None:
        if row is None:
            raise RecordNotFound(self.schema.model, self.id)
        data = dict(row)
        self.values = {
            name: self.registry.cast(spec.type, data[name]) if name in data else None
            for name, spec in self.schema.fields.items()
        }
        column = soft_delete_column_of(self.schema)
        if column is not None and column not in self.schema.fields:
            self.values[column] = data.get(column)
        self.exists = True

    def _require_persisted(self) -> None:
        if not self.exists or self.id is None:
            raise RecordNotFound(self.schema.model, self.id)

    def _coerce_key(self, record_id: Any) -> Any:
        try:
            return self.registry.coerce(self.schema.fields[self.primary_key].type, record_id)
        except (TypeError, ValueError) as e:
            raise RecordNotFound(self.schema.model, record_id) from e

    def _storage_key(self) -> Any:
        pk_spec = self.schema.fields[self.primary_key]
        return self.registry.to_storage(pk_spec.type, self.id)

    def _select_row(
        self, conn: sqlite3.Connection, key: Any, with_deleted: bool
    ) -> sqlite3.Row | None:
        sql = (
            f"SELECT * FROM {quote_identifier(self.table, 'table name')} "
            f"WHERE {quote_identifier(self.primary_key)} = ?"
        )
        column = soft_delete_column_of(self.schema)
        if column is not None and not with_deleted:
            sql = f"{sql} AND {active_row_clause(column)}"
        return conn.execute(sql, (key,)).fetchone()

    def _rules(self, spec: FieldSpec) -> dict[str, Any]:
        rules = dict(self.registry.describe(spec.type).default_validation)
        rules.update(spec.validation)
        return rules

    def _coerce_one(self, spec: FieldSpec, value: Any, errors: dict[str, list[str]]) -> Any:
        try:
            return self.registry.coerce(spec.type, value)
        except (TypeError, ValueError) as e:
            errors.setdefault(spec.name, []).append(f"invalid {spec.type} value: {e}")
            return None

    def _coerce_values(self, values: dict[str, Any]) -> dict[str, Any]:
        """Reject unknown/non-editable keys, then coerce through the registry."""
        for name in values:
            spec = self.schema.fields.get(name)
            if spec is None:
                raise FieldNotEditable(self.schema.model, name, "not a field of this model")
            if not spec.editable:
                raise FieldNotEditable(self.schema.model, name)

        errors: dict[str, list[str]] = {}
        coerced = {
            name: self._coerce_one(self.schema.fields[name], value, errors)
            for name, value in values.items()
        }
        if errors:
            raise ValidationFailed(self.schema.model, errors)
        return coerced

    def _to_storage(self, coerced: dict[str, Any]) -> dict[str, Any]:
        return {
            name: self.registry.to_storage(self.schema.fields[name].type, value)
            for name, value in coerced.items()
        }

    def _check_unique(
        self, conn: sqlite3.Connection, coerced: dict[str, Any], exclude_id: Any
    ) -> None:
        errors: dict[str, list[str]] = {}
        table = quote_identifier(self.table, "table name")
        pk = quote_identifier(self.primary_key)
        for name, value in coerced.items():
            spec = self.schema.fields[name]
            if not spec.validation.get("unique") or value is None:
                continue
            sql = f"SELECT 1 FROM {table} WHERE {quote_identifier(name)} = ?"
            params: list[Any] = [self.registry.to_storage(spec.type, value)]
            if exclude_id is not None:
                sql = f"{sql} AND {pk} != ?"
                params.append(exclude_id)
            if conn.execute(f"{sql} LIMIT 1", params).fetchone() is not None:
                errors[name] = ["has already been taken"]
        if errors:
            raise ValidationFailed(self.schema.model, errors)

    async def _set_marker(self, column: str, marker: Any, operation: str) -> None:
        sql = (
            f"UPDATE {quote_identifier(self.table, 'table name')} "
            f"SET {quote_identifier(column, 'soft delete column')} = ? "
            f"WHERE {quote_identifier(self.primary_key)} = ?"
        )
        with self.db.transaction(operation, self.table) as conn:
            cursor = conn.execute(sql, (marker, self._storage_key()))
            if cursor.rowcount == 0:
                raise RecordNotFound(self.schema.model, self.id)
        self.values[column] = marker
