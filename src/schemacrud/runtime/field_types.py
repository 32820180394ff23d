"""
Field type registry.

Maps a declared field type name to its coercion, storage conversion,
default validation fragment, and storage-affinity hint. Unknown type names
raise ``UnsupportedFieldType``; there is no fallback to ``string``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from schemacrud.errors import UnsupportedFieldType

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on", "y"})
_FALSE_STRINGS = frozenset({"0", "false", "no", "off", "n", ""})

# Legacy and shorthand type names accepted in schema files
_TYPE_ALIASES: dict[str, str] = {
    "int": "integer",
    "number": "decimal",
    "bool": "boolean",
    "boolean-yn": "boolean",
    "boolean-tgl": "boolean",
    "boolean-toggle": "boolean",
    "boolean-chk": "boolean",
    "boolean-sel": "boolean",
    "textarea": "text",
    "timestamp": "datetime",
    "smartlookup": "lookup",
}

_TEXTAREA_PATTERN = re.compile(r"^(?:text|textarea)(?:-r\d+)?(?:c\d+)?$")


# =============================================================================
# Coercion Functions
# =============================================================================


def _coerce_integer(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{value!r} is not a whole number")
        return int(value)
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError(f"{value!r} is not a whole number")
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"cannot convert {type(value).__name__} to integer")


def _coerce_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("cannot convert bool to decimal")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"{value!r} is not a decimal number") from exc
    else:
        raise TypeError(f"cannot convert {type(value).__name__} to decimal")
    if not result.is_finite():
        raise ValueError(f"{value!r} is not a finite number")
    return result


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("cannot convert bool to float")
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"cannot convert {type(value).__name__} to float")


def _coerce_string(value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise TypeError(f"cannot convert {type(value).__name__} to string")
    return str(value)


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"{value!r} is not a boolean")


def _coerce_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if "T" in text or " " in text:
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    raise TypeError(f"cannot convert {type(value).__name__} to date")


def _coerce_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip())
    raise TypeError(f"cannot convert {type(value).__name__} to datetime")


def _coerce_json(value: Any) -> Any:
    if isinstance(value, str):
        # Already-encoded JSON is decoded rather than double-encoded
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    json.dumps(value)
    return value


def _coerce_lookup(value: Any) -> int | str | None:
    if value == "":
        return None
    if isinstance(value, bool):
        raise TypeError("cannot use bool as a lookup key")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text) if text.lstrip("-").isdigit() else text
    raise TypeError(f"cannot use {type(value).__name__} as a lookup key")


# =============================================================================
# Storage Conversion
# =============================================================================


def _identity(value: Any) -> Any:
    return value


def _iso(value: date) -> str:
    return value.isoformat()


def _cast_decimal(raw: Any) -> Decimal:
    return Decimal(str(raw))


def _cast_date(raw: Any) -> date | None:
    if raw == "":
        return None
    return raw if isinstance(raw, date) else date.fromisoformat(str(raw))


def _cast_datetime(raw: Any) -> datetime | None:
    if raw == "":
        return None
    return raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))


def _cast_json(raw: Any) -> Any:
    return json.loads(raw) if isinstance(raw, str) else raw


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class FieldTypeHandler:
    """
    Behavior of one field type.

    Attributes:
        name: Registered type name
        coerce_fn: Input value to typed Python value (raises ValueError/TypeError)
        cast_fn: Storage value to typed Python value
        storage_fn: Typed Python value to storage parameter
        default_validation: Validation fragment merged under field rules
        storage_affinity: Column affinity hint for table-generation tooling
    """

    name: str
    coerce_fn: Callable[[Any], Any]
    cast_fn: Callable[[Any], Any] = _identity
    storage_fn: Callable[[Any], Any] = _identity
    default_validation: dict[str, Any] = field(default_factory=dict)
    storage_affinity: str = "TEXT"

    def coerce(self, value: Any) -> Any:
        """Convert an input value to this type. ``None`` passes through."""
        if value is None:
            return None
        return self.coerce_fn(value)

    def cast(self, raw: Any) -> Any:
        """Convert a stored value back to this type."""
        if raw is None:
            return None
        return self.cast_fn(raw)

    def to_storage(self, value: Any) -> Any:
        """Convert a typed value to a storage parameter."""
        if value is None:
            return None
        return self.storage_fn(value)


def _builtin_handlers() -> list[FieldTypeHandler]:
    return [
        FieldTypeHandler(
            name="integer",
            coerce_fn=_coerce_integer,
            cast_fn=int,
            default_validation={"integer": True},
            storage_affinity="INTEGER",
        ),
        FieldTypeHandler(
            name="decimal",
            coerce_fn=_coerce_decimal,
            cast_fn=_cast_decimal,
            storage_fn=str,
            default_validation={"numeric": True},
            # NUMERIC affinity would round long values through REAL
            storage_affinity="TEXT",
        ),
        FieldTypeHandler(
            name="float",
            coerce_fn=_coerce_float,
            cast_fn=float,
            default_validation={"numeric": True},
            storage_affinity="REAL",
        ),
        FieldTypeHandler(name="string", coerce_fn=_coerce_string, cast_fn=str),
        FieldTypeHandler(name="text", coerce_fn=_coerce_string, cast_fn=str),
        FieldTypeHandler(
            name="boolean",
            coerce_fn=_coerce_boolean,
            cast_fn=bool,
            storage_fn=int,
            storage_affinity="INTEGER",
        ),
        FieldTypeHandler(
            name="date",
            coerce_fn=_coerce_date,
            cast_fn=_cast_date,
            storage_fn=_iso,
            default_validation={"date": True},
        ),
        FieldTypeHandler(
            name="datetime",
            coerce_fn=_coerce_datetime,
            cast_fn=_cast_datetime,
            storage_fn=_iso,
            default_validation={"datetime": True},
        ),
        FieldTypeHandler(
            name="json",
            coerce_fn=_coerce_json,
            cast_fn=_cast_json,
            storage_fn=json.dumps,
        ),
        FieldTypeHandler(
            name="lookup",
            coerce_fn=_coerce_lookup,
            storage_affinity="INTEGER",
        ),
    ]


class FieldTypeRegistry:
    """
    Registry of field type handlers.

    Example:
        registry = FieldTypeRegistry()
        handler = registry.describe("decimal")
        handler.coerce("12.50")  # Decimal("12.50")
    """

    def __init__(self, handlers: list[FieldTypeHandler] | None = None):
        self._handlers: dict[str, FieldTypeHandler] = {}
        for handler in handlers if handlers is not None else _builtin_handlers():
            self.register(handler)

    def register(self, handler: FieldTypeHandler) -> None:
        """Register (or replace) a type handler."""
        self._handlers[handler.name] = handler

    def resolve_name(self, type_name: str) -> str:
        """Resolve aliases (``int``, ``boolean-tgl``, ``textarea-r5c60`` ...)."""
        name = type_name.strip().lower()
        if name in self._handlers:
            return name
        if name in _TYPE_ALIASES:
            return _TYPE_ALIASES[name]
        if _TEXTAREA_PATTERN.match(name):
            return "text"
        return name

    def has(self, type_name: str) -> bool:
        return self.resolve_name(type_name) in self._handlers

    def describe(self, type_name: str) -> FieldTypeHandler:
        """
        Get the handler for a type.

        Raises:
            UnsupportedFieldType: If the type is not registered
        """
        handler = self._handlers.get(self.resolve_name(type_name))
        if handler is None:
            raise UnsupportedFieldType(type_name)
        return handler

    def registered_types(self) -> list[str]:
        return list(self._handlers)

    def coerce(self, type_name: str, value: Any) -> Any:
        return self.describe(type_name).coerce(value)

    def cast(self, type_name: str, raw: Any) -> Any:
        return self.describe(type_name).cast(raw)

    def to_storage(self, type_name: str, value: Any) -> Any:
        return self.describe(type_name).to_storage(value)
