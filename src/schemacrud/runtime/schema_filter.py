"""
Schema filter.

Derives audience-specific views of a canonical schema:

- ``list``: listable fields (type, label, sort/filter flags) plus default sort
- ``form``: editable fields with merged validation rules
- ``detail``: every viewable field plus the relationship descriptors
- ``meta``: model name, titles, and permission map only
- multi-context (``"list,form"``): base metadata once plus a ``contexts`` map

Context keys are order-normalized: ``"form,list"`` and ``"list,form"`` both
resolve to the key ``"list,form"`` and produce identical payloads.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.specs.schema import FieldSpec, ModelSchema, soft_delete_column_of

logger = logging.getLogger(__name__)

FULL_CONTEXT = "full"
CONTEXT_ORDER: tuple[str, ...] = ("list", "form", "detail", "meta")
KNOWN_CONTEXTS = frozenset(CONTEXT_ORDER)


# =============================================================================
# Context Keys
# =============================================================================


@dataclass(frozen=True)
class ContextRequest:
    """Parsed context parameter."""

    key: str
    tokens: tuple[str, ...] = ()
    unknown: tuple[str, ...] = ()

    @property
    def is_full(self) -> bool:
        return not self.tokens

    @property
    def is_multi(self) -> bool:
        return len(self.tokens) + len(self.unknown) > 1


def parse_context(context: str | None) -> ContextRequest:
    """
    Parse a context parameter into its canonical key and known tokens.

    Tokens are lower-cased, deduplicated and put in ``CONTEXT_ORDER``.
    Unknown tokens stay in the key (sorted, after the known ones) but never
    contribute a payload. A request with no known token is the full schema.
    """
    if context is None:
        return ContextRequest(FULL_CONTEXT)

    requested = {token.strip().lower() for token in context.split(",") if token.strip()}
    if not requested or requested == {FULL_CONTEXT}:
        return ContextRequest(FULL_CONTEXT)

    tokens = tuple(token for token in CONTEXT_ORDER if token in requested)
    unknown = tuple(sorted(requested - KNOWN_CONTEXTS - {FULL_CONTEXT}))
    if unknown:
        logger.debug(f"Dropping unknown context tokens: {', '.join(unknown)}")
    if not tokens:
        return ContextRequest(FULL_CONTEXT)
    return ContextRequest(",".join(tokens + unknown), tokens, unknown)


# =============================================================================
# Context Views
# =============================================================================


@dataclass(frozen=True)
class QueryPermissions:
    """Field names a query may reference, per clause type. Never contains ''."""

    sortable: tuple[str, ...] = ()
    filterable: tuple[str, ...] = ()
    listable: tuple[str, ...] = ()

    @classmethod
    def from_schema(cls, schema: ModelSchema) -> QueryPermissions:
        def names(flag: str) -> tuple[str, ...]:
            return tuple(
                name for name, spec in schema.fields.items() if name and getattr(spec, flag)
            )

        return cls(
            sortable=names("sortable"),
            filterable=names("filterable"),
            listable=names("listable"),
        )


@dataclass(frozen=True)
class ContextView:
    """
    Immutable filtered view of one schema.

    ``payload`` must not be mutated; ``to_dict()`` hands out a deep copy.
    """

    model: str
    context_key: str
    tokens: tuple[str, ...]
    payload: dict[str, Any] = field(repr=False)
    permissions: QueryPermissions = field(default_factory=QueryPermissions)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.payload)

    @property
    def field_names(self) -> list[str]:
        """Field names of a single-context view (empty for meta and multi views)."""
        return list(self.payload.get("fields", {}))


# =============================================================================
# Filter
# =============================================================================


class SchemaFilter:
    """Builds context views from canonical schemas."""

    def __init__(self, registry: FieldTypeRegistry | None = None):
        self.registry = registry or FieldTypeRegistry()

    def filter_for_context(self, schema: ModelSchema, context: str | None = None) -> ContextView:
        """Derive the view of ``schema`` for a context parameter."""
        return self.build_view(schema, parse_context(context))

    def build_view(self, schema: ModelSchema, request: ContextRequest) -> ContextView:
        if request.is_full:
            payload = self._full(schema)
        elif request.is_multi:
            payload = self._base(schema)
            payload["contexts"] = {
                token: self._context_payload(schema, token) for token in request.tokens
            }
        else:
            payload = self._base(schema)
            payload.update(self._context_payload(schema, request.tokens[0]))

        return ContextView(
            model=schema.model,
            context_key=request.key,
            tokens=request.tokens,
            payload=payload,
            permissions=QueryPermissions.from_schema(schema),
        )

    # -------------------------------------------------------------------------
    # Payload builders
    # -------------------------------------------------------------------------

    def _base(self, schema: ModelSchema) -> dict[str, Any]:
        base: dict[str, Any] = {
            "model": schema.model,
            "title": schema.display_title,
            "singular_title": schema.singular_title or schema.display_title,
            "description": schema.description,
            "primary_key": schema.primary_key,
            "permissions": dict(schema.permissions),
        }
        if schema.title_field:
            base["title_field"] = schema.title_field
        return base

    def _context_payload(self, schema: ModelSchema, token: str) -> dict[str, Any]:
        if token == "list":
            return {
                "fields": {
                    name: self._list_field(spec)
                    for name, spec in schema.fields.items()
                    if spec.listable
                },
                "default_sort": dict(schema.default_sort),
            }
        if token == "form":
            return {
                "fields": {
                    name: self._form_field(spec)
                    for name, spec in schema.fields.items()
                    if spec.editable
                }
            }
        if token == "detail":
            payload: dict[str, Any] = {
                "fields": {
                    name: self._detail_field(spec)
                    for name, spec in schema.fields.items()
                    if spec.viewable
                }
            }
            if schema.detail is not None:
                payload["detail"] = schema.detail.model_dump(mode="json")
            if schema.details:
                payload["details"] = [d.model_dump(mode="json") for d in schema.details]
            if schema.relationships:
                payload["relationships"] = [
                    r.model_dump(mode="json") for r in schema.relationships
                ]
            return payload
        # meta carries no field data
        return {}

    def _full(self, schema: ModelSchema) -> dict[str, Any]:
        payload = self._base(schema)
        payload.update(
            {
                "table": schema.table,
                "soft_delete_column": soft_delete_column_of(schema),
                "default_sort": dict(schema.default_sort),
                "fields": {
                    name: spec.model_dump(mode="json", exclude_none=True)
                    for name, spec in schema.fields.items()
                },
                "details": [d.model_dump(mode="json") for d in schema.details],
                "relationships": [r.model_dump(mode="json") for r in schema.relationships],
            }
        )
        return payload

    def _list_field(self, spec: FieldSpec) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": spec.type,
            "label": spec.display_label,
            "sortable": spec.sortable,
            "filterable": spec.filterable,
        }
        if spec.filterable and spec.filter_operator is not None:
            data["filter_type"] = spec.filter_operator.value
        if spec.lookup is not None:
            data["lookup"] = spec.lookup.model_dump()
        return data

    def _form_field(self, spec: FieldSpec) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": spec.type,
            "label": spec.display_label,
            "required": spec.required,
            "editable": True,
            "validation": self.validation_rules(spec),
        }
        for key in ("placeholder", "description", "default"):
            value = getattr(spec, key)
            if value is not None:
                data[key] = value
        if spec.lookup is not None:
            data["lookup"] = spec.lookup.model_dump()
        return data

    def _detail_field(self, spec: FieldSpec) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": spec.type,
            "label": spec.display_label,
            "editable": spec.editable,
            "readonly": spec.readonly or spec.auto_generated,
        }
        for key in ("description", "default"):
            value = getattr(spec, key)
            if value is not None:
                data[key] = value
        if spec.lookup is not None:
            data["lookup"] = spec.lookup.model_dump()
        return data

    def validation_rules(self, spec: FieldSpec) -> dict[str, Any]:
        """Type-default validation merged under the field's own rules."""
        rules = dict(self.registry.describe(spec.type).default_validation)
        rules.update(copy.deepcopy(spec.validation))
        if spec.required:
            rules["required"] = True
        return rules


def filter_for_context(
    schema: ModelSchema,
    context: str | None = None,
    registry: FieldTypeRegistry | None = None,
) -> ContextView:
    """Module-level convenience wrapper around ``SchemaFilter``."""
    return SchemaFilter(registry).filter_for_context(schema, context)
