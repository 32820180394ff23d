"""
CRUD service facade.

Wires the schema cache, generic records, list queries, and relation resolver
into one object a routing layer can call. Authorization is not enforced
here: ``required_permission`` reports which token an operation needs and the
caller checks it.
"""

from __future__ import annotations

import logging
from typing import Any

from schemacrud.config import CrudConfig, get_config
from schemacrud.errors import FieldNotEditable
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.runtime.logging import setup_logging
from schemacrud.runtime.query_builder import ListParams, ListQuery, PagedResult
from schemacrud.runtime.record import GenericRecord
from schemacrud.runtime.relation_resolver import RelationResolver
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_cache import SchemaCache
from schemacrud.runtime.schema_filter import ContextView, SchemaFilter
from schemacrud.runtime.schema_loader import SchemaLoader
from schemacrud.specs.schema import ModelSchema

logger = logging.getLogger(__name__)

# Operations that reuse another operation's permission token
_PERMISSION_ALIASES = {
    "attach": "update",
    "detach": "update",
    "sync": "update",
    "restore": "delete",
    "detail": "read",
    "list": "read",
    "schema": "read",
}


class CrudService:
    """
    Schema-driven CRUD operations for any model.

    Example:
        service = create_crud_service()
        view = await service.get_schema("users", "list,form")
        page = await service.list("users", ListParams(search="john"))
        user = await service.create("users", {"user_name": "john"})
    """

    def __init__(
        self,
        cache: SchemaCache,
        db: DatabaseManager,
        config: CrudConfig | None = None,
    ):
        self.cache = cache
        self.db = db
        self.config = config or get_config()
        self.registry = cache.loader.registry
        self.relations = RelationResolver(
            cache,
            db,
            self.registry,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )

    # =========================================================================
    # Schemas
    # =========================================================================

    async def get_schema(
        self, model: str, context: str | None = None, connection: str | None = None
    ) -> ContextView:
        return await self.cache.get(model, context, connection)

    async def canonical_schema(self, model: str, connection: str | None = None) -> ModelSchema:
        return await self.cache.get_schema(model, connection)

    def clear_cache(self, model: str | None = None) -> None:
        """Administrative cache reset."""
        self.cache.clear(model)

    async def required_permission(self, model: str, operation: str) -> str | None:
        """
        Permission token the caller must hold for ``operation`` on ``model``.

        Falls back through ``_PERMISSION_ALIASES`` (``attach`` uses the
        ``update`` token, ``list`` uses ``read`` ...). None means the schema
        declares no token for it.
        """
        schema = await self.cache.get_schema(model)
        token = schema.permission_for(operation)
        if token is None and operation in _PERMISSION_ALIASES:
            token = schema.permission_for(_PERMISSION_ALIASES[operation])
        return token

    # =========================================================================
    # Records
    # =========================================================================

    async def new_record(self, model: str, connection: str | None = None) -> GenericRecord:
        schema = await self.cache.get_schema(model, connection)
        return GenericRecord(schema, self.db, self.registry)

    async def get_record(
        self, model: str, record_id: Any, with_deleted: bool = False
    ) -> GenericRecord:
        record = await self.new_record(model)
        return await record.find(record_id, with_deleted=with_deleted)

    async def create(self, model: str, values: dict[str, Any]) -> GenericRecord:
        record = await self.new_record(model)
        return await record.create(values)

    async def update(self, model: str, record_id: Any, values: dict[str, Any]) -> GenericRecord:
        record = await self.get_record(model, record_id)
        return await record.update(values)

    async def delete(self, model: str, record_id: Any) -> bool:
        record = await self.get_record(model, record_id)
        return await record.delete()

    async def restore(self, model: str, record_id: Any) -> bool:
        record = await self.get_record(model, record_id, with_deleted=True)
        return await record.restore()

    # =========================================================================
    # Listings
    # =========================================================================

    async def list(self, model: str, params: ListParams | None = None) -> PagedResult:
        """Paginated/sorted/filtered/searched rows of ``model``."""
        schema = await self.cache.get_schema(model)
        view = await self.cache.get(model, "list")
        query = ListQuery(
            schema,
            self.registry,
            view.permissions,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        result = await query.fetch(self.db, params or ListParams())
        await self.relations.resolve_lookup_display(schema, result.rows)
        return result

    async def list_detail(
        self,
        model: str,
        record_id: Any,
        related_model: str | None = None,
        params: ListParams | None = None,
    ) -> PagedResult:
        """Detail listing of ``related_model`` (first declared detail when None)."""
        parent = await self.get_record(model, record_id)
        if related_model is None:
            descriptor = parent.schema.detail
        else:
            descriptor = parent.schema.get_detail(related_model)
        if descriptor is None:
            raise FieldNotEditable(model, related_model or "detail", "not a declared detail")
        return await self.relations.list_detail(parent, descriptor, params)

    async def attach(
        self,
        model: str,
        record_id: Any,
        relation: str,
        related_ids: list[Any],
        pivot_data: dict[str, Any] | None = None,
    ) -> int:
        parent = await self.get_record(model, record_id)
        return await self.relations.attach(parent, relation, related_ids, pivot_data)

    async def detach(
        self,
        model: str,
        record_id: Any,
        relation: str,
        related_ids: list[Any] | None = None,
    ) -> int:
        parent = await self.get_record(model, record_id)
        return await self.relations.detach(parent, relation, related_ids)

    async def sync(
        self,
        model: str,
        record_id: Any,
        relation: str,
        related_ids: list[Any],
        pivot_data: dict[str, Any] | None = None,
    ) -> dict[str, list[Any]]:
        parent = await self.get_record(model, record_id)
        return await self.relations.sync(parent, relation, related_ids, pivot_data)


def create_crud_service(
    config: CrudConfig | None = None,
    registry: FieldTypeRegistry | None = None,
    configure_logging: bool = False,
) -> CrudService:
    """
    Build a ``CrudService`` from configuration.

    Args:
        config: Configuration (defaults to ``get_config()``)
        registry: Field type registry (defaults to the built-in types)
        configure_logging: Install console/JSONL handlers from ``config``
    """
    config = config or get_config()
    if configure_logging:
        setup_logging(level=config.log_level_value, log_dir=config.log_dir)
    registry = registry or FieldTypeRegistry()
    loader = SchemaLoader(config.schema_path, registry)
    cache = SchemaCache(loader, SchemaFilter(registry), debug=config.debug_mode)
    db = DatabaseManager(config.db_path)
    logger.info(f"CRUD service ready (schemas: {config.schema_path}, db: {config.db_path})")
    return CrudService(cache, db, config)
