"""
Schema cache.

Memoizes context views by ``"<model>:<context-key>"`` with single-flight
loading:

- Concurrent callers for the same key await one in-flight load.
- A caller whose context is covered by an in-flight broader request for the
  same model (``"detail,form"`` covers ``"form"``; ``"full"`` covers
  everything) waits on that request instead of starting a new load.
- A completed load stores the requested key, each constituent single
  context, and the full view, so later single-context requests are hits.
- Once a model's canonical schema is cached, any other context is derived
  from it without touching the loader.

Loads run in a worker thread (``asyncio.to_thread``) and are shielded, so a
cancelled caller never cancels a load other callers are waiting on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from schemacrud.runtime.logging import log_with_context
from schemacrud.runtime.schema_filter import (
    FULL_CONTEXT,
    ContextRequest,
    ContextView,
    SchemaFilter,
    parse_context,
)
from schemacrud.runtime.schema_loader import SchemaLoader
from schemacrud.specs.schema import ModelSchema

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Counters for cache diagnostics."""

    hits: int = 0
    misses: int = 0
    waits: int = 0
    loads: int = 0


@dataclass(frozen=True)
class _InFlight:
    task: asyncio.Task[ModelSchema]
    request: ContextRequest

    def covers(self, request: ContextRequest) -> bool:
        if self.request.is_full:
            return True
        if request.is_full:
            return False
        return set(request.tokens) <= set(self.request.tokens)


class SchemaCache:
    """
    Process-scoped schema cache service.

    Created once at startup and injected where needed; ``clear()`` is the
    administrative reset.

    Example:
        cache = SchemaCache(SchemaLoader(config.schema_path))
        view = await cache.get("users", "list,form")
    """

    def __init__(
        self,
        loader: SchemaLoader,
        schema_filter: SchemaFilter | None = None,
        debug: bool = False,
    ):
        self.loader = loader
        self.schema_filter = schema_filter or SchemaFilter(loader.registry)
        self.debug = debug
        self.stats = CacheStats()
        self._views: dict[str, ContextView] = {}
        self._schemas: dict[str, ModelSchema] = {}
        self._inflight: dict[str, _InFlight] = {}
        self._generation = 0

    @staticmethod
    def _model_id(model: str, connection: str | None) -> str:
        return f"{model}@{connection}" if connection else model

    @staticmethod
    def cache_key(model_id: str, request: ContextRequest) -> str:
        return f"{model_id}:{request.key}"

    # =========================================================================
    # Lookup
    # =========================================================================

    async def get(
        self,
        model: str,
        context: str | None = None,
        connection: str | None = None,
    ) -> ContextView:
        """
        Get the view of a model for a context parameter.

        Raises:
            SchemaNotFound / SchemaInvalid: From the loader; failures are not cached
        """
        request = parse_context(context)
        model_id = self._model_id(model, connection)
        key = self.cache_key(model_id, request)
        generation = self._generation

        view = self._views.get(key)
        if view is not None:
            self.stats.hits += 1
            self._trace("Schema cache hit", key)
            return view

        inflight = self._inflight.get(key) or self._find_covering(model_id, request)
        if inflight is not None:
            self.stats.waits += 1
            self._trace("Waiting on in-flight schema load", key, covering=inflight.request.key)
            schema = await asyncio.shield(inflight.task)
            return self._settled_view(generation, model_id, schema, request)

        schema = self._schemas.get(model_id)
        if schema is not None:
            self.stats.hits += 1
            self._trace("Deriving view from cached schema", key)
            return self._view_for(model_id, schema, request)

        self.stats.misses += 1
        self._trace("Schema cache miss", key)
        task = asyncio.get_running_loop().create_task(
            self._load(model, connection, model_id, request, generation)
        )
        self._inflight[key] = _InFlight(task, request)
        task.add_done_callback(lambda done: self._forget(key, done))
        schema = await asyncio.shield(task)
        return self._settled_view(generation, model_id, schema, request)

    async def get_schema(self, model: str, connection: str | None = None) -> ModelSchema:
        """Get the canonical schema (loads through the ``full`` key on a miss)."""
        model_id = self._model_id(model, connection)
        schema = self._schemas.get(model_id)
        if schema is None:
            await self.get(model, None, connection)
            schema = self._schemas.get(model_id)
        if schema is None:
            # Cleared between load and read; reload once through the loader
            schema = await asyncio.to_thread(self.loader.load, model, connection)
        return schema

    def clear(self, model: str | None = None) -> None:
        """
        Drop cached entries for one model (every connection), or everything.

        Loads already in flight still complete for their callers, but their
        results are not stored and later requests start a fresh load.
        """
        self._generation += 1
        if model is None:
            self._views.clear()
            self._schemas.clear()
            self._inflight.clear()
            logger.info("Schema cache cleared")
            return

        def matches(model_id: str) -> bool:
            return model_id == model or model_id.startswith(f"{model}@")

        for key in [k for k in self._views if matches(k.split(":", 1)[0])]:
            del self._views[key]
        for model_id in [m for m in self._schemas if matches(m)]:
            del self._schemas[model_id]
        for key in [k for k in self._inflight if matches(k.split(":", 1)[0])]:
            del self._inflight[key]
        logger.info(f"Schema cache cleared for model '{model}'")

    def cached_keys(self) -> list[str]:
        return sorted(self._views)

    # =========================================================================
    # Internals
    # =========================================================================

    def _find_covering(self, model_id: str, request: ContextRequest) -> _InFlight | None:
        prefix = f"{model_id}:"
        for key, inflight in self._inflight.items():
            if key.startswith(prefix) and inflight.covers(request):
                return inflight
        return None

    def _forget(self, key: str, task: asyncio.Task[ModelSchema]) -> None:
        current = self._inflight.get(key)
        if current is not None and current.task is task:
            del self._inflight[key]

    async def _load(
        self,
        model: str,
        connection: str | None,
        model_id: str,
        request: ContextRequest,
        generation: int,
    ) -> ModelSchema:
        self.stats.loads += 1
        schema = await asyncio.to_thread(self.loader.load, model, connection)

        if generation == self._generation:
            self._schemas[model_id] = schema
            self._view_for(model_id, schema, request)
            self._view_for(model_id, schema, parse_context(FULL_CONTEXT))
            if request.is_multi:
                for token in request.tokens:
                    self._view_for(model_id, schema, parse_context(token))
        log_with_context(
            logger,
            logging.DEBUG,
            "Schema loaded",
            model=model,
            context=request.key,
            connection=connection,
        )
        return schema

    def _view_for(
        self, model_id: str, schema: ModelSchema, request: ContextRequest
    ) -> ContextView:
        key = self.cache_key(model_id, request)
        view = self._views.get(key)
        if view is None:
            view = self.schema_filter.build_view(schema, request)
            self._views[key] = view
        return view

    def _settled_view(
        self, generation: int, model_id: str, schema: ModelSchema, request: ContextRequest
    ) -> ContextView:
        """View for a finished load; not cached when a clear happened meanwhile."""
        if generation != self._generation:
            return self.schema_filter.build_view(schema, request)
        return self._view_for(model_id, schema, request)

    def _trace(self, message: str, key: str, **context: str) -> None:
        if self.debug:
            log_with_context(logger, logging.DEBUG, message, key=key, **context)
