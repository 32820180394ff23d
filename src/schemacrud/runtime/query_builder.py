"""
Query builder for schema-constrained listing.

Two layers:

- ``QueryBuilder``: parameterized SQL generation (filters, sorting, search,
  pagination). Every identifier passes ``validate_sql_identifier`` when the
  clause object is constructed, so a clause naming an empty column cannot
  exist.
- ``ListQuery``: binds a ``QueryBuilder`` to a ``ModelSchema`` and its
  ``QueryPermissions``. Client sort/filter keys outside the permitted lists
  are ignored; search runs over filterable fields only and is a no-op when
  there are none.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemacrud.errors import ValidationFailed
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_filter import QueryPermissions
from schemacrud.specs.schema import (
    FieldSpec,
    FilterOperator,
    ModelSchema,
    soft_delete_column_of,
)

logger = logging.getLogger(__name__)

# Valid SQL identifier pattern (alphanumeric and underscore, not starting with digit)
_VALID_IDENTIFIER_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

_BRACKET_PARAM = re.compile(r"^(sorts|filters)\[([^\]]*)\]$")

LIKE_ESCAPE = "\\"


def validate_sql_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate that a string is a safe SQL identifier.

    Args:
        name: The identifier to validate
        context: Description of what's being validated (for error messages)

    Returns:
        The validated name

    Raises:
        ValueError: If the name is empty or contains invalid characters
    """
    if not name:
        raise ValueError(f"SQL {context} cannot be empty")
    if not _VALID_IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return name


def quote_identifier(name: str, context: str = "identifier") -> str:
    """Validate and double-quote an identifier."""
    return f'"{validate_sql_identifier(name, context)}"'


def _column_ref(name: str, table_alias: str | None = None) -> str:
    column = quote_identifier(name, "column name")
    if table_alias:
        return f"{quote_identifier(table_alias, 'table alias')}.{column}"
    return column


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", f"{LIKE_ESCAPE}%")
        .replace("_", f"{LIKE_ESCAPE}_")
    )


def active_row_clause(column: str, table_alias: str | None = None) -> str:
    """Rows not soft-deleted: the marker is NULL or an empty string."""
    ref = _column_ref(column, table_alias)
    return f"({ref} IS NULL OR {ref} = '')"


# Operator mapping to SQL
OPERATOR_SQL: dict[FilterOperator, str] = {
    FilterOperator.EQ: "{field} = ?",
    FilterOperator.NE: "{field} != ?",
    FilterOperator.GT: "{field} > ?",
    FilterOperator.GTE: "{field} >= ?",
    FilterOperator.LT: "{field} < ?",
    FilterOperator.LTE: "{field} <= ?",
    FilterOperator.CONTAINS: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.ICONTAINS: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.STARTSWITH: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.ISTARTSWITH: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.ENDSWITH: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.IENDSWITH: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.IN: "{field} IN ({placeholders})",
    FilterOperator.NOT_IN: "{field} NOT IN ({placeholders})",
    FilterOperator.ISNULL: "{field} IS NULL",
    FilterOperator.BETWEEN: "{field} BETWEEN ? AND ?",
}

_LIKE_PATTERNS: dict[FilterOperator, str] = {
    FilterOperator.CONTAINS: "%{}%",
    FilterOperator.ICONTAINS: "%{}%",
    FilterOperator.STARTSWITH: "{}%",
    FilterOperator.ISTARTSWITH: "{}%",
    FilterOperator.ENDSWITH: "%{}",
    FilterOperator.IENDSWITH: "%{}",
}

_LIST_OPERATORS = frozenset({FilterOperator.IN, FilterOperator.NOT_IN, FilterOperator.BETWEEN})


# =============================================================================
# Clauses
# =============================================================================


@dataclass
class FilterCondition:
    """A single filter condition. Values are storage-ready."""

    field: str
    operator: FilterOperator
    value: Any

    def __post_init__(self) -> None:
        validate_sql_identifier(self.field, "filter field")

    @staticmethod
    def split_key(key: str) -> tuple[str, FilterOperator | None]:
        """
        Split a filter key into field name and explicit operator.

        Examples:
            - "status" -> ("status", None)
            - "created_at__gt" -> ("created_at", FilterOperator.GT)
        """
        if "__" in key:
            name, _, suffix = key.rpartition("__")
            try:
                return name, FilterOperator(suffix.lower())
            except ValueError:
                pass
        return key, None

    def to_sql(self, table_alias: str | None = None) -> tuple[str, list[Any]]:
        """
        Convert condition to SQL fragment and parameters.

        Args:
            table_alias: Optional table alias for the field

        Returns:
            Tuple of (sql_fragment, parameters)
        """
        field_ref = _column_ref(self.field, table_alias)

        if self.operator == FilterOperator.ISNULL:
            if self.value:
                return f"{field_ref} IS NULL", []
            return f"{field_ref} IS NOT NULL", []

        if self.operator in (FilterOperator.IN, FilterOperator.NOT_IN):
            values = list(self.value) if isinstance(self.value, (list, tuple)) else [self.value]
            if not values:
                # Empty IN matches nothing, empty NOT IN matches everything
                return ("1 = 0", []) if self.operator == FilterOperator.IN else ("1 = 1", [])
            placeholders = ", ".join("?" * len(values))
            sql = OPERATOR_SQL[self.operator].format(field=field_ref, placeholders=placeholders)
            return sql, values

        if self.operator == FilterOperator.BETWEEN:
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("BETWEEN operator requires a list of two values")
            return OPERATOR_SQL[self.operator].format(field=field_ref), list(self.value)

        sql = OPERATOR_SQL[self.operator].format(field=field_ref)
        if self.operator in _LIKE_PATTERNS:
            return sql, [_LIKE_PATTERNS[self.operator].format(escape_like(str(self.value)))]
        return sql, [self.value]


@dataclass
class SortField:
    """A single sort field."""

    field: str
    descending: bool = False

    def __post_init__(self) -> None:
        validate_sql_identifier(self.field, "sort field")

    def to_sql(self, table_alias: str | None = None) -> str:
        """Convert to SQL ORDER BY fragment."""
        direction = "DESC" if self.descending else "ASC"
        return f"{_column_ref(self.field, table_alias)} {direction}"


@dataclass
class QueryBuilder:
    """
    Builds SQL queries with filters, sorting, search, and pagination.

    ``scope`` conditions (foreign-key scoping, soft-delete exclusion) apply to
    both counts; ``conditions`` and search apply to the filtered count and
    the page.

    Example:
        builder = QueryBuilder(table_name="users")
        builder.add_condition(FilterCondition("group_id", FilterOperator.EQ, 5))
        builder.add_sort(SortField("user_name"))
        builder.set_pagination(page=1, page_size=20)

        sql, params = builder.build_select()
    """

    table_name: str
    conditions: list[FilterCondition] = field(default_factory=list)
    scope: list[FilterCondition] = field(default_factory=list)
    active_column: str | None = None
    sorts: list[SortField] = field(default_factory=list)
    page: int = 1
    page_size: int = 20
    max_page_size: int = 1000
    select_fields: list[str] = field(default_factory=list)
    search_query: str | None = None
    search_fields: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate identifiers on initialization."""
        validate_sql_identifier(self.table_name, "table name")
        if self.active_column is not None:
            validate_sql_identifier(self.active_column, "soft delete column")
        for name in self.select_fields:
            validate_sql_identifier(name, "select field")

    def add_condition(self, condition: FilterCondition) -> QueryBuilder:
        self.conditions.append(condition)
        return self

    def add_scope(self, condition: FilterCondition) -> QueryBuilder:
        self.scope.append(condition)
        return self

    def add_sort(self, sort_field: SortField) -> QueryBuilder:
        self.sorts.append(sort_field)
        return self

    def set_pagination(self, page: int, page_size: int) -> QueryBuilder:
        """Set pagination parameters."""
        self.page = max(1, page)
        self.page_size = max(1, min(page_size, self.max_page_size))
        return self

    def set_search(self, query: str | None, fields: Iterable[str]) -> QueryBuilder:
        """
        Set search over ``fields``.

        A blank query or an empty field list leaves the query unchanged.
        """
        names = [validate_sql_identifier(name, "search field") for name in fields]
        if query is None or not query.strip() or not names:
            self.search_query = None
            self.search_fields = []
            return self
        self.search_query = query.strip()
        self.search_fields = names
        return self

    def build_search_clause(self) -> tuple[str, list[Any]]:
        """OR-chain of case-insensitive partial matches."""
        if not self.search_query or not self.search_fields:
            return "", []
        pattern = f"%{escape_like(self.search_query)}%"
        fragments = [
            OPERATOR_SQL[FilterOperator.ICONTAINS].format(field=_column_ref(name))
            for name in self.search_fields
        ]
        return f"({' OR '.join(fragments)})", [pattern] * len(fragments)

    def build_where_clause(self, include_filters: bool = True) -> tuple[str, list[Any]]:
        """
        Build the WHERE clause.

        Returns:
            Tuple of (where_clause, parameters)
        """
        fragments: list[str] = []
        params: list[Any] = []

        if self.active_column is not None:
            fragments.append(active_row_clause(self.active_column))

        conditions = self.scope + (self.conditions if include_filters else [])
        for condition in conditions:
            sql, condition_params = condition.to_sql()
            fragments.append(sql)
            params.extend(condition_params)

        if include_filters:
            search_sql, search_params = self.build_search_clause()
            if search_sql:
                fragments.append(search_sql)
                params.extend(search_params)

        if not fragments:
            return "", []
        return f"WHERE {' AND '.join(fragments)}", params

    def build_order_clause(self) -> str:
        """Build the ORDER BY clause."""
        if not self.sorts:
            return ""
        return f"ORDER BY {', '.join(sort.to_sql() for sort in self.sorts)}"

    def build_limit_offset(self) -> tuple[str, list[int]]:
        """Build LIMIT/OFFSET clause."""
        offset = (self.page - 1) * self.page_size
        return "LIMIT ? OFFSET ?", [self.page_size, offset]

    def build_select(self) -> tuple[str, list[Any]]:
        """
        Build the paginated SELECT query.

        Returns:
            Tuple of (sql, parameters)
        """
        columns = ", ".join(_column_ref(name) for name in self.select_fields) or "*"
        parts = [f"SELECT {columns} FROM {quote_identifier(self.table_name, 'table name')}"]

        where_clause, params = self.build_where_clause()
        if where_clause:
            parts.append(where_clause)

        order_clause = self.build_order_clause()
        if order_clause:
            parts.append(order_clause)

        limit_clause, limit_params = self.build_limit_offset()
        parts.append(limit_clause)
        params.extend(limit_params)

        return " ".join(parts), params

    def build_count(self, filtered: bool = True) -> tuple[str, list[Any]]:
        """Build a COUNT query; ``filtered=False`` applies the scope only."""
        parts = [f"SELECT COUNT(*) FROM {quote_identifier(self.table_name, 'table name')}"]
        where_clause, params = self.build_where_clause(include_filters=filtered)
        if where_clause:
            parts.append(where_clause)
        return " ".join(parts), params


# =============================================================================
# Request / Response Models
# =============================================================================


class ListParams(BaseModel):
    """
    Listing parameters as accepted from a routing collaborator.

    Examples:
        ListParams(page=2, size=10, sorts={"user_name": "desc"}, filters={"email": "@example"})
    """

    page: int = Field(default=1, ge=1)
    size: int | None = Field(default=None, ge=1)
    sorts: dict[str, str] = Field(default_factory=dict)
    filters: dict[str, Any] = Field(default_factory=dict)
    search: str | None = Field(default=None)

    model_config = ConfigDict(frozen=True)

    @field_validator("page", mode="before")
    @classmethod
    def default_page(cls, v: Any) -> Any:
        return 1 if v in (None, "") else v

    @field_validator("size", mode="before")
    @classmethod
    def default_size(cls, v: Any) -> Any:
        return None if v in (None, "", "all") else v

    @classmethod
    def from_query_params(cls, params: Mapping[str, Any] | Iterable[tuple[str, Any]]) -> ListParams:
        """
        Parse flat query parameters (``sorts[name]=asc``, ``filters[email]=x``).

        Examples:
            ListParams.from_query_params({"page": "2", "sorts[user_name]": "desc"})
        """
        items = params.items() if isinstance(params, Mapping) else params
        data: dict[str, Any] = {"sorts": {}, "filters": {}}
        for key, value in items:
            match = _BRACKET_PARAM.match(key)
            if match:
                data[match.group(1)][match.group(2)] = value
            elif key in ("page", "size", "search"):
                data[key] = value
        return cls.model_validate(data)


class PagedResult(BaseModel):
    """One page of rows plus the unfiltered and filtered totals."""

    rows: list[dict[str, Any]] = Field(default_factory=list)
    count: int = Field(default=0, description="Rows in scope before filters/search")
    count_filtered: int = Field(default=0, description="Rows matching filters/search")


# =============================================================================
# Schema-bound Listing
# =============================================================================


class ListQuery:
    """
    Schema-constrained listing over one model's table.

    Example:
        query = ListQuery(schema, registry, view.permissions)
        query.scope_to("group_id", 5)
        result = query.execute(db, ListParams(search="john"))
    """

    def __init__(
        self,
        schema: ModelSchema,
        registry: FieldTypeRegistry,
        permissions: QueryPermissions | None = None,
        *,
        projection: Iterable[str] | None = None,
        default_page_size: int = 25,
        max_page_size: int = 1000,
    ):
        self.schema = schema
        self.registry = registry
        self.permissions = permissions or QueryPermissions.from_schema(schema)
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self._scope: list[FilterCondition] = []

        if projection is None:
            columns = list(self.permissions.listable)
        else:
            columns = [name for name in projection if name in schema.fields]
        self.projection = [name for name in columns if name]

    @property
    def select_fields(self) -> list[str]:
        """Columns selected and returned per row; the primary key alone when nothing is listable."""
        return self.projection or [self.schema.primary_key]

    def scope_to(self, field_name: str, value: Any) -> ListQuery:
        """
        Restrict every count and page to ``field_name = value``.

        The column need not be a declared field (foreign keys often are not);
        undeclared columns receive the value unconverted.
        """
        spec = self.schema.fields.get(field_name)
        storage_value = value if spec is None else self._storage_value(spec, value)
        self._scope.append(FilterCondition(field_name, FilterOperator.EQ, storage_value))
        return self

    def build(self, params: ListParams) -> QueryBuilder:
        """Translate ``params`` into a builder, dropping non-permitted keys."""
        builder = QueryBuilder(
            table_name=self.schema.table,
            scope=list(self._scope),
            active_column=soft_delete_column_of(self.schema),
            max_page_size=self.max_page_size,
            select_fields=self.select_fields,
        )
        builder.set_pagination(params.page, params.size or self.default_page_size)

        errors: dict[str, list[str]] = {}
        filterable = set(self.permissions.filterable)
        for key, value in params.filters.items():
            name, operator = FilterCondition.split_key(key)
            if name not in filterable:
                logger.debug(f"Ignoring filter on non-filterable field '{key}' ({self.schema.model})")
                continue
            if value is None or value == "":
                continue
            spec = self.schema.fields[name]
            try:
                builder.add_condition(self._condition(spec, operator, value))
            except (TypeError, ValueError) as e:
                errors.setdefault(name, []).append(f"invalid filter value: {e}")
        if errors:
            raise ValidationFailed(self.schema.model, errors)

        self._apply_sorts(builder, params.sorts)
        builder.set_search(params.search, self.permissions.filterable)
        return builder

    def execute(self, db: DatabaseManager, params: ListParams) -> PagedResult:
        builder = self.build(params)
        count_sql, count_params = builder.build_count(filtered=False)
        filtered_sql, filtered_params = builder.build_count(filtered=True)
        select_sql, select_params = builder.build_select()

        with db.transaction("list", self.schema.table) as conn:
            count = conn.execute(count_sql, count_params).fetchone()[0]
            count_filtered = conn.execute(filtered_sql, filtered_params).fetchone()[0]
            rows = conn.execute(select_sql, select_params).fetchall()

        return PagedResult(
            rows=[self._row(row) for row in rows],
            count=count,
            count_filtered=count_filtered,
        )

    async def fetch(self, db: DatabaseManager, params: ListParams) -> PagedResult:
        return self.execute(db, params)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _storage_value(self, spec: FieldSpec, value: Any) -> Any:
        handler = self.registry.describe(spec.type)
        return handler.to_storage(handler.coerce(value))

    def _default_operator(self, spec: FieldSpec) -> FilterOperator:
        if spec.filter_operator is not None:
            return spec.filter_operator
        if spec.type in ("string", "text"):
            return FilterOperator.ICONTAINS
        return FilterOperator.EQ

    def _condition(
        self, spec: FieldSpec, operator: FilterOperator | None, value: Any
    ) -> FilterCondition:
        operator = operator or self._default_operator(spec)
        if operator == FilterOperator.ISNULL:
            return FilterCondition(spec.name, operator, self.registry.coerce("boolean", value))
        if operator in _LIKE_PATTERNS:
            return FilterCondition(spec.name, operator, str(value))
        if operator in _LIST_OPERATORS:
            values = value.split(",") if isinstance(value, str) else value
            if not isinstance(values, (list, tuple)):
                values = [values]
            return FilterCondition(
                spec.name, operator, [self._storage_value(spec, v) for v in values]
            )
        return FilterCondition(spec.name, operator, self._storage_value(spec, value))

    def _apply_sorts(self, builder: QueryBuilder, sorts: Mapping[str, str]) -> None:
        sortable = set(self.permissions.sortable)
        for name, direction in sorts.items():
            if name not in sortable:
                logger.debug(f"Ignoring unknown sort key '{name}' ({self.schema.model})")
                continue
            builder.add_sort(SortField(name, str(direction).lower() == "desc"))

        if not builder.sorts:
            for name, direction in self.schema.default_sort.items():
                if name in self.schema.fields:
                    builder.add_sort(SortField(name, direction == "desc"))

        # Stable paging
        if all(sort.field != self.schema.primary_key for sort in builder.sorts):
            builder.add_sort(SortField(self.schema.primary_key))

    def _row(self, row: Any) -> dict[str, Any]:
        data = dict(row)
        return {
            name: self.registry.cast(self.schema.fields[name].type, data.get(name))
            for name in self.select_fields
        }
