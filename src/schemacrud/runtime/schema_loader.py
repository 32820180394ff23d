"""
Schema loader.

Reads ``<model>.json`` / ``<model>.yaml`` schema descriptions, normalizes the
legacy and shorthand attribute spellings into the canonical form, and
validates the result into an immutable ``ModelSchema``.

Lookup order for ``load("users", connection="analytics")``:
    1. {schema_path}/analytics/users.(json|yaml|yml)
    2. {schema_path}/users.(json|yaml|yml)
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from schemacrud.errors import SchemaInvalid, SchemaNotFound, UnsupportedFieldType
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.specs.schema import ModelSchema

logger = logging.getLogger(__name__)

SCHEMA_EXTENSIONS = (".json", ".yaml", ".yml")
LEGACY_SOFT_DELETE_COLUMN = "deleted_at"

_MODEL_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# show_in tokens mapped onto the context they make a field visible in
_SHOW_IN_LISTABLE = frozenset({"list"})
_SHOW_IN_EDITABLE = frozenset({"form", "create", "edit"})
_SHOW_IN_VIEWABLE = frozenset({"detail", "view"})

_FIELD_ATTRIBUTES = frozenset(
    {
        "name",
        "type",
        "label",
        "description",
        "sortable",
        "filterable",
        "listable",
        "editable",
        "viewable",
        "auto_generated",
        "readonly",
        "required",
        "default",
        "validation",
        "filter_operator",
        "lookup",
        "placeholder",
    }
)


# =============================================================================
# Normalization
# =============================================================================


def _normalize_lookup(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return {"model": raw}
    if isinstance(raw, dict):
        lookup = {"model": raw.get("model") or raw.get("table")}
        if "id" in raw or "key" in raw:
            lookup["id"] = raw.get("id", raw.get("key"))
        if "desc" in raw or "display" in raw:
            lookup["desc"] = raw.get("desc", raw.get("display"))
        return lookup
    return raw


def _normalize_field(name: str, raw: dict[str, Any]) -> dict[str, Any]:
    """Map legacy field attribute spellings onto ``FieldSpec`` attributes."""
    data = dict(raw)
    data.setdefault("name", name)

    ui = data.pop("ui", None)
    if isinstance(ui, dict):
        for key in ("label", "sortable", "filterable", "placeholder", "show_in"):
            if key in ui and key not in data:
                data[key] = ui[key]

    if "nullable" in data:
        nullable = data.pop("nullable")
        data.setdefault("required", not nullable)
    if "defaultValue" in data:
        data.setdefault("default", data.pop("defaultValue"))
    for key in ("autoIncrement", "auto_increment"):
        if key in data:
            data["auto_generated"] = bool(data.pop(key)) or data.get("auto_generated", False)
    if "readonly" not in data and "read_only" in data:
        data["readonly"] = data.pop("read_only")

    validation = dict(data.pop("validation", None) or data.pop("validate", None) or {})
    data.pop("validate", None)
    if "length" in data:
        length = data.pop("length")
        bounds = dict(validation.get("length") or {})
        bounds.setdefault("max", length)
        validation["length"] = bounds
    if data.pop("unique", False):
        validation.setdefault("unique", True)
    data["validation"] = validation

    references = data.pop("references", None)
    lookup = _normalize_lookup(data.pop("lookup", None) or references)
    if lookup is not None:
        data["lookup"] = lookup

    show_in = data.pop("show_in", None)
    if isinstance(show_in, list):
        tokens = {str(token).lower() for token in show_in}
        data.setdefault("listable", bool(tokens & _SHOW_IN_LISTABLE))
        data.setdefault("editable", bool(tokens & _SHOW_IN_EDITABLE))
        data.setdefault("viewable", bool(tokens & _SHOW_IN_VIEWABLE) or not tokens)

    # Storage-produced and read-only fields are never client-writable
    if data.get("auto_generated") or data.get("readonly"):
        data["editable"] = False

    for key in [k for k in data if k not in _FIELD_ATTRIBUTES]:
        logger.debug(f"Ignoring unknown attribute '{key}' on field '{name}'")
        data.pop(key)

    return data


def normalize_schema(raw: dict[str, Any]) -> dict[str, Any]:
    """
    Normalize a raw schema description into canonical attribute names.

    Empty-string soft-delete columns become ``None`` here so that downstream
    consumers only ever check for absence.
    """
    data = dict(raw)

    if "soft_delete_column" not in data and "soft_delete" in data:
        legacy = data.pop("soft_delete")
        if legacy is True:
            data["soft_delete_column"] = LEGACY_SOFT_DELETE_COLUMN
        elif isinstance(legacy, str) and legacy.strip():
            data["soft_delete_column"] = legacy.strip()
    data.pop("soft_delete", None)
    column = data.get("soft_delete_column")
    if column is not None and (not isinstance(column, str) or not column.strip()):
        data["soft_delete_column"] = None

    details = list(data.pop("details", None) or [])
    if data.get("detail"):
        details.insert(0, data.pop("detail"))
    data.pop("detail", None)
    data["details"] = details

    raw_fields = data.get("fields")
    if isinstance(raw_fields, dict):
        data["fields"] = {
            name: _normalize_field(name, spec) if isinstance(spec, dict) else spec
            for name, spec in raw_fields.items()
        }

    if isinstance(data.get("default_sort"), dict):
        data["default_sort"] = {
            key: str(direction).lower() for key, direction in data["default_sort"].items()
        }
    return data


# =============================================================================
# Loader
# =============================================================================


def _error_path(error: dict[str, Any]) -> str:
    return ".".join(str(part) for part in error["loc"])


class SchemaLoader:
    """
    Loads canonical schemas from a directory of schema files.

    Example:
        loader = SchemaLoader(Path("schema/crud6"))
        schema = loader.load("users")
    """

    def __init__(self, schema_path: Path | str, registry: FieldTypeRegistry | None = None):
        self.schema_path = Path(schema_path)
        self.registry = registry or FieldTypeRegistry()

    def find_schema_file(self, model: str, connection: str | None = None) -> Path | None:
        """Locate the schema file for a model, connection directory first."""
        directories = []
        if connection:
            directories.append(self.schema_path / connection)
        directories.append(self.schema_path)

        for directory in directories:
            for extension in SCHEMA_EXTENSIONS:
                candidate = directory / f"{model}{extension}"
                if candidate.is_file():
                    return candidate
        return None

    def load(self, model: str, connection: str | None = None) -> ModelSchema:
        """
        Load, normalize, and validate a model schema.

        Raises:
            SchemaNotFound: No schema file exists for the model
            SchemaInvalid: The description is malformed (path-qualified message)
            UnsupportedFieldType: A field declares an unregistered type
        """
        if not _MODEL_NAME_PATTERN.match(model):
            raise SchemaNotFound(model)
        if connection is not None and not _MODEL_NAME_PATTERN.match(connection):
            connection = None

        path = self.find_schema_file(model, connection)
        if path is None:
            raise SchemaNotFound(model)

        logger.debug(f"Loading schema '{model}' from {path}")
        raw = self._read(model, path)
        schema = self.parse(model, raw)
        if connection and schema.connection is None:
            schema = schema.model_copy(update={"connection": connection})
        return schema

    def parse(self, model: str, raw: Any) -> ModelSchema:
        """Validate a raw description (already decoded) into a ``ModelSchema``."""
        if not isinstance(raw, dict):
            raise SchemaInvalid(model, "", "schema must be a mapping")

        for key in ("model", "table", "fields"):
            if not raw.get(key):
                raise SchemaInvalid(model, key, "is required")
        if raw["model"] != model:
            raise SchemaInvalid(
                model, "model", f"declares '{raw['model']}', expected '{model}'"
            )
        if not isinstance(raw["fields"], dict):
            raise SchemaInvalid(model, "fields", "must be a mapping of field name to descriptor")

        data = normalize_schema(raw)
        data.setdefault("primary_key", "id")
        if data["primary_key"] not in data["fields"]:
            raise SchemaInvalid(
                model, "primary_key", f"'{data['primary_key']}' is not a declared field"
            )

        for name, spec in data["fields"].items():
            if not isinstance(spec, dict):
                raise SchemaInvalid(model, f"fields.{name}", "must be a mapping")
            if not spec.get("type"):
                raise SchemaInvalid(model, f"fields.{name}.type", "is required")
            try:
                self.registry.describe(spec["type"])
            except UnsupportedFieldType as e:
                raise UnsupportedFieldType(e.field_type, model, f"fields.{name}.type") from e
            spec["type"] = self.registry.resolve_name(spec["type"])

        try:
            return ModelSchema.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            raise SchemaInvalid(model, _error_path(first), first["msg"]) from e

    def _read(self, model: str, path: Path) -> Any:
        try:
            content = path.read_text(encoding="utf-8")
            if path.suffix == ".json":
                return json.loads(content)
            return yaml.safe_load(content)
        except json.JSONDecodeError as e:
            raise SchemaInvalid(model, "", f"invalid JSON in {path.name}: {e}") from e
        except yaml.YAMLError as e:
            raise SchemaInvalid(model, "", f"invalid YAML in {path.name}: {e}") from e
        except (UnicodeDecodeError, OSError) as e:
            raise SchemaInvalid(model, "", f"cannot read {path.name}") from e
