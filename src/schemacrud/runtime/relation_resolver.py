"""
Relationship resolution driven by schema descriptors.

- One-to-many "detail" listings: the related model's rows scoped by
  ``foreign_key = parent.id``, listed with the related model's own
  permissions.
- Many-to-many links through a pivot table: attach, detach, sync. Each
  operation is one transaction and is idempotent.
- Lookup display values: ``<field>_display`` for listable lookup fields,
  resolved with one batched query per field.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from schemacrud.errors import FieldNotEditable, RecordNotFound, ValidationFailed
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.runtime.query_builder import ListParams, ListQuery, PagedResult, quote_identifier
from schemacrud.runtime.record import GenericRecord
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_cache import SchemaCache
from schemacrud.specs.schema import DetailSpec, ModelSchema, RelationshipSpec

logger = logging.getLogger(__name__)

# Pivot values replaced at write time
PIVOT_PLACEHOLDERS = {
    "now": lambda: datetime.now().isoformat(sep=" ", timespec="seconds"),
    "current_date": lambda: date.today().isoformat(),
}


def resolve_pivot_data(pivot_data: dict[str, Any] | None) -> dict[str, Any]:
    """Validate pivot column names and substitute ``now`` / ``current_date``."""
    resolved: dict[str, Any] = {}
    for column, value in (pivot_data or {}).items():
        quote_identifier(column, "pivot column")
        if isinstance(value, str) and value in PIVOT_PLACEHOLDERS:
            value = PIVOT_PLACEHOLDERS[value]()
        resolved[column] = value
    return resolved


def _unique(values: list[Any]) -> list[Any]:
    seen: dict[Any, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)


class RelationResolver:
    """
    Resolves detail listings and pivot relationships for any model pair.

    Example:
        resolver = RelationResolver(cache, db, registry)
        page = await resolver.list_detail(group, group.schema.detail, ListParams(search="john"))
        await resolver.attach(user, "roles", [1, 2])
    """

    def __init__(
        self,
        cache: SchemaCache,
        db: DatabaseManager,
        registry: FieldTypeRegistry | None = None,
        *,
        default_page_size: int = 25,
        max_page_size: int = 1000,
    ):
        self.cache = cache
        self.db = db
        self.registry = registry or cache.loader.registry
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # =========================================================================
    # One-to-many
    # =========================================================================

    async def list_detail(
        self,
        parent: GenericRecord,
        descriptor: DetailSpec,
        params: ListParams | None = None,
    ) -> PagedResult:
        """List related rows whose ``descriptor.foreign_key`` equals the parent key."""
        if parent.id is None:
            raise RecordNotFound(parent.schema.model, None)

        connection = parent.schema.connection
        related = await self.cache.get_schema(descriptor.model, connection)
        view = await self.cache.get(descriptor.model, "list", connection)

        projection = [name for name in descriptor.list_fields if name in related.fields]
        query = ListQuery(
            related,
            self.registry,
            view.permissions,
            projection=projection or None,
            default_page_size=self.default_page_size,
            max_page_size=self.max_page_size,
        )
        query.scope_to(descriptor.foreign_key, parent.id)

        result = await query.fetch(self.db, params or ListParams())
        await self.resolve_lookup_display(related, result.rows)
        return result

    # =========================================================================
    # Many-to-many
    # =========================================================================

    def _relationship(self, parent: GenericRecord, name: str) -> RelationshipSpec:
        relationship = parent.schema.get_relationship(name)
        if relationship is None:
            raise FieldNotEditable(parent.schema.model, name, "not a declared relationship")
        if parent.id is None:
            raise RecordNotFound(parent.schema.model, None)
        return relationship

    async def _related_ids(
        self, parent: GenericRecord, relationship: RelationshipSpec, ids: list[Any]
    ) -> list[Any]:
        if relationship.related_model:
            related = await self.cache.get_schema(
                relationship.related_model, parent.schema.connection
            )
            key_type = related.fields[related.primary_key].type
        else:
            key_type = "lookup"
        try:
            coerced = [self.registry.coerce(key_type, value) for value in ids]
        except (TypeError, ValueError) as e:
            raise ValidationFailed(
                parent.schema.model, {relationship.name: [f"invalid related id: {e}"]}
            ) from e
        return _unique([value for value in coerced if value is not None])

    async def attach(
        self,
        parent: GenericRecord,
        relation: str,
        related_ids: list[Any],
        pivot_data: dict[str, Any] | None = None,
    ) -> int:
        """
        Link ``related_ids`` to the parent. Already-linked ids are skipped.

        Returns:
            Number of newly created pivot rows
        """
        relationship = self._relationship(parent, relation)
        ids = await self._related_ids(parent, relationship, related_ids)
        if not ids:
            return 0
        extra = resolve_pivot_data(pivot_data)

        with self.db.transaction("attach", relationship.pivot_table) as conn:
            attached = self._insert_links(conn, relationship, parent.id, ids, extra)

        logger.debug(
            f"Attached {attached} {relation} link(s) to {parent.schema.model}#{parent.id}"
        )
        return attached

    async def detach(
        self,
        parent: GenericRecord,
        relation: str,
        related_ids: list[Any] | None = None,
    ) -> int:
        """
        Unlink ``related_ids`` (every link when None). Unlinked ids are ignored.

        Returns:
            Number of removed pivot rows
        """
        relationship = self._relationship(parent, relation)
        ids = None
        if related_ids is not None:
            ids = await self._related_ids(parent, relationship, related_ids)
            if not ids:
                return 0

        with self.db.transaction("detach", relationship.pivot_table) as conn:
            detached = self._delete_links(conn, relationship, parent.id, ids)

        logger.debug(
            f"Detached {detached} {relation} link(s) from {parent.schema.model}#{parent.id}"
        )
        return detached

    async def sync(
        self,
        parent: GenericRecord,
        relation: str,
        related_ids: list[Any],
        pivot_data: dict[str, Any] | None = None,
    ) -> dict[str, list[Any]]:
        """Make the parent's links exactly ``related_ids`` in one transaction."""
        relationship = self._relationship(parent, relation)
        ids = await self._related_ids(parent, relationship, related_ids)
        extra = resolve_pivot_data(pivot_data)

        with self.db.transaction("sync", relationship.pivot_table) as conn:
            current = self._linked_ids(conn, relationship, parent.id)
            wanted = set(ids)
            removed = [value for value in current if value not in wanted]
            added = [value for value in ids if value not in set(current)]
            if removed:
                self._delete_links(conn, relationship, parent.id, removed)
            if added:
                self._insert_links(conn, relationship, parent.id, added, extra)

        return {"attached": added, "detached": removed}

    async def linked_ids(self, parent: GenericRecord, relation: str) -> list[Any]:
        relationship = self._relationship(parent, relation)
        with self.db.transaction("linked_ids", relationship.pivot_table) as conn:
            return self._linked_ids(conn, relationship, parent.id)

    def _linked_ids(self, conn: Any, relationship: RelationshipSpec, parent_id: Any) -> list[Any]:
        sql = (
            f"SELECT {quote_identifier(relationship.related_key)} "
            f"FROM {quote_identifier(relationship.pivot_table, 'pivot table')} "
            f"WHERE {quote_identifier(relationship.foreign_key)} = ?"
        )
        return [row[0] for row in conn.execute(sql, (parent_id,)).fetchall()]

    def _insert_links(
        self,
        conn: Any,
        relationship: RelationshipSpec,
        parent_id: Any,
        ids: list[Any],
        extra: dict[str, Any],
    ) -> int:
        existing = set(self._linked_ids(conn, relationship, parent_id))
        missing = [value for value in ids if value not in existing]
        if not missing:
            return 0

        columns = [relationship.foreign_key, relationship.related_key, *extra]
        column_sql = ", ".join(quote_identifier(name) for name in columns)
        placeholders = ", ".join("?" * len(columns))
        sql = (
            f"INSERT INTO {quote_identifier(relationship.pivot_table, 'pivot table')} "
            f"({column_sql}) VALUES ({placeholders})"
        )
        conn.executemany(sql, [(parent_id, value, *extra.values()) for value in missing])
        return len(missing)

    def _delete_links(
        self,
        conn: Any,
        relationship: RelationshipSpec,
        parent_id: Any,
        ids: list[Any] | None,
    ) -> int:
        sql = (
            f"DELETE FROM {quote_identifier(relationship.pivot_table, 'pivot table')} "
            f"WHERE {quote_identifier(relationship.foreign_key)} = ?"
        )
        params: list[Any] = [parent_id]
        if ids is not None:
            sql = f"{sql} AND {quote_identifier(relationship.related_key)} IN ({', '.join('?' * len(ids))})"
            params.extend(ids)
        return conn.execute(sql, params).rowcount

    # =========================================================================
    # Lookup display
    # =========================================================================

    async def resolve_lookup_display(
        self, schema: ModelSchema, rows: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        """Add ``<field>_display`` to ``rows`` (in place) for listable lookup fields."""
        if not rows:
            return rows

        for name, spec in schema.fields.items():
            if spec.lookup is None or not spec.listable or name not in rows[0]:
                continue
            keys = _unique([row[name] for row in rows if row.get(name) is not None])
            displays: dict[Any, Any] = {}
            if keys:
                target = await self.cache.get_schema(spec.lookup.model, schema.connection)
                sql = (
                    f"SELECT {quote_identifier(spec.lookup.id)}, {quote_identifier(spec.lookup.desc)} "
                    f"FROM {quote_identifier(target.table, 'table name')} "
                    f"WHERE {quote_identifier(spec.lookup.id)} IN ({', '.join('?' * len(keys))})"
                )
                with self.db.transaction("lookup", target.table) as conn:
                    displays = {row[0]: row[1] for row in conn.execute(sql, keys).fetchall()}
            for row in rows:
                row[f"{name}_display"] = displays.get(row.get(name))
        return rows
