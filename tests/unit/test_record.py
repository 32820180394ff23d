"""
Tests for the generic record.

Tests create/update/find through the field type registry, editability,
validation rules, and soft-delete behavior with the column present,
absent, or blank.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from schemacrud.errors import (
    AlreadySoftDeleted,
    ConstraintViolation,
    FieldNotEditable,
    RecordNotFound,
    ValidationFailed,
)
from schemacrud.runtime.field_types import FieldTypeRegistry
from schemacrud.runtime.query_builder import ListParams, ListQuery
from schemacrud.runtime.record import GenericRecord, check_rules, is_deleted_marker
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_loader import SchemaLoader
from schemacrud.specs.schema import FieldSpec, ModelSchema


def _record(loader: SchemaLoader, db: DatabaseManager, model: str) -> GenericRecord:
    return GenericRecord(loader.load(model), db, FieldTypeRegistry())


async def _user(users_schema: ModelSchema, db: DatabaseManager, name: str = "john") -> GenericRecord:
    return await GenericRecord(users_schema, db).create(
        {"user_name": name, "email": f"{name}@example.com", "group_id": 5}
    )


def _mark_deleted(db: DatabaseManager, record_id: int) -> None:
    with db.connection() as conn:
        conn.execute(
            'UPDATE "users" SET "deleted_at" = \'2024-01-01 00:00:00\' WHERE "id" = ?',
            (record_id,),
        )


# =============================================================================
# Rule Checks
# =============================================================================


class TestCheckRules:
    """Tests for structured validation rules."""

    def test_required(self) -> None:
        spec = FieldSpec(name="slug", type="string", required=True)
        assert check_rules(spec, "  ", {}) == ["is required"]
        assert check_rules(spec, None, {}) == ["is required"]

    def test_length(self) -> None:
        spec = FieldSpec(name="slug", type="string")
        assert check_rules(spec, "a", {"length": {"min": 2}}) == ["must be at least 2 characters"]
        assert check_rules(spec, "abc", {"length": {"max": 2}}) == ["must be at most 2 characters"]

    def test_numeric_bounds(self) -> None:
        spec = FieldSpec(name="quantity", type="integer")
        assert check_rules(spec, 0, {"min": 1}) == ["must be at least 1"]
        assert check_rules(spec, Decimal("5"), {"max": 4}) == ["must be at most 4"]

    def test_email_and_url(self) -> None:
        spec = FieldSpec(name="x", type="string")
        assert check_rules(spec, "not-an-email", {"email": True})
        assert not check_rules(spec, "a@b.co", {"email": True})
        assert check_rules(spec, "ftp://host", {"url": True})
        assert not check_rules(spec, "https://example.com", {"url": True})

    def test_regex_and_in(self) -> None:
        spec = FieldSpec(name="x", type="string")
        assert check_rules(spec, "ABC", {"regex": "^[a-z]+$"}) == ["has an invalid format"]
        assert check_rules(spec, "c", {"in": ["a", "b"]}) == ["must be one of: a, b"]

    def test_none_skips_non_required_rules(self) -> None:
        spec = FieldSpec(name="x", type="string")
        assert check_rules(spec, None, {"email": True, "length": {"min": 3}}) == []

    @pytest.mark.parametrize(
        "value, expected",
        [(None, False), ("", False), ("2024-01-01 10:00:00", True), (0, True)],
    )
    def test_deleted_marker(self, value: object, expected: bool) -> None:
        assert is_deleted_marker(value) is expected


# =============================================================================
# Create / Find / Update
# =============================================================================


class TestCreate:
    """Tests for record creation."""

    @pytest.mark.asyncio
    async def test_round_trip_every_type(self, loader: SchemaLoader, db: DatabaseManager) -> None:
        record = await _record(loader, db, "items").create(
            {
                "quantity": "3",
                "price": "12.50",
                "weight": 1.5,
                "title": "Bolt",
                "notes": "Zinc plated",
                "active": "yes",
                "released": "2024-01-02",
                "updated": "2024-01-02T03:04:05",
                "meta": {"tags": ["a", "b"]},
                "group_id": "5",
            }
        )

        found = await _record(loader, db, "items").find(record.id)

        assert found.get("quantity") == 3
        assert found.get("price") == Decimal("12.50")
        assert found.get("weight") == 1.5
        assert found.get("title") == "Bolt"
        assert found.get("notes") == "Zinc plated"
        assert found.get("active") is True
        assert found.get("released") == date(2024, 1, 2)
        assert found.get("updated") == datetime(2024, 1, 2, 3, 4, 5)
        assert found.get("meta") == {"tags": ["a", "b"]}
        assert found.get("group_id") == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "price", ["12345678901234567.123456789", "0.10000000000000000001", "-1E+3"]
    )
    async def test_decimal_keeps_every_digit(
        self, loader: SchemaLoader, db: DatabaseManager, price: str
    ) -> None:
        record = await _record(loader, db, "items").create({"title": "Gear", "price": price})

        found = await _record(loader, db, "items").find(record.id)

        assert found.get("price") == Decimal(price)
        assert str(found.get("price")) == str(Decimal(price))

    @pytest.mark.asyncio
    async def test_nulls_round_trip(self, loader: SchemaLoader, db: DatabaseManager) -> None:
        record = await _record(loader, db, "items").create({"title": "Empty"})

        assert record.get("price") is None
        assert record.get("released") is None
        assert record.get("meta") is None

    @pytest.mark.asyncio
    async def test_auto_generated_key(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        first = await _user(users_schema, db, "john")
        second = await _user(users_schema, db, "jane")

        assert isinstance(first.id, int)
        assert second.id == first.id + 1
        assert first.get("deleted_at") is None

    @pytest.mark.asyncio
    async def test_non_editable_field_rejected(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        with pytest.raises(FieldNotEditable) as exc_info:
            await GenericRecord(users_schema, db).create({"id": 99, "user_name": "john"})

        assert exc_info.value.field == "id"

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        with pytest.raises(FieldNotEditable) as exc_info:
            await GenericRecord(users_schema, db).create({"user_name": "john", "is_admin": True})

        assert exc_info.value.reason == "not a field of this model"

    @pytest.mark.asyncio
    async def test_validation_failures_collected(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await GenericRecord(users_schema, db).create({"user_name": "j", "email": "nope"})

        assert set(exc_info.value.errors) == {"user_name", "email"}

    @pytest.mark.asyncio
    async def test_required_field_missing(self, loader: SchemaLoader, db: DatabaseManager) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await _record(loader, db, "groups").create({"slug": "admins"})

        assert exc_info.value.errors == {"name": ["is required"]}

    @pytest.mark.asyncio
    async def test_coercion_failure(self, loader: SchemaLoader, db: DatabaseManager) -> None:
        with pytest.raises(ValidationFailed) as exc_info:
            await _record(loader, db, "items").create({"quantity": "lots"})

        assert "quantity" in exc_info.value.errors

    @pytest.mark.asyncio
    async def test_unique_rule(self, loader: SchemaLoader, db: DatabaseManager) -> None:
        await _record(loader, db, "groups").create({"slug": "admins", "name": "Admins"})

        with pytest.raises(ValidationFailed) as exc_info:
            await _record(loader, db, "groups").create({"slug": "admins", "name": "Other"})

        assert exc_info.value.errors == {"slug": ["has already been taken"]}

    @pytest.mark.asyncio
    async def test_storage_unique_constraint(
        self, loader: SchemaLoader, db: DatabaseManager
    ) -> None:
        await _record(loader, db, "roles").create({"slug": "editor", "name": "Editor"})

        with pytest.raises(ConstraintViolation) as exc_info:
            await _record(loader, db, "roles").create({"slug": "editor", "name": "Again"})

        assert exc_info.value.constraint_type == "unique"
        assert exc_info.value.field == "slug"


class TestFindAndUpdate:
    """Tests for lookup and partial update."""

    @pytest.mark.asyncio
    async def test_find_missing(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        with pytest.raises(RecordNotFound):
            await GenericRecord(users_schema, db).find(404)

    @pytest.mark.asyncio
    async def test_find_with_unparseable_key(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        with pytest.raises(RecordNotFound):
            await GenericRecord(users_schema, db).find("abc")

    @pytest.mark.asyncio
    async def test_find_accepts_string_key(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        user = await _user(users_schema, db)

        found = await GenericRecord(users_schema, db).find(str(user.id))

        assert found.get("user_name") == "john"

    @pytest.mark.asyncio
    async def test_partial_update(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        user = await _user(users_schema, db)

        await user.update({"email": "johnny@example.com"})
        found = await GenericRecord(users_schema, db).find(user.id)

        assert found.get("email") == "johnny@example.com"
        assert found.get("user_name") == "john"

    @pytest.mark.asyncio
    async def test_update_unique_excludes_self(
        self, loader: SchemaLoader, db: DatabaseManager
    ) -> None:
        group = await _record(loader, db, "groups").create({"slug": "admins", "name": "Admins"})

        await group.update({"slug": "admins", "name": "Administrators"})

        assert group.get("name") == "Administrators"

    @pytest.mark.asyncio
    async def test_update_unpersisted(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        with pytest.raises(RecordNotFound):
            await GenericRecord(users_schema, db).update({"email": "a@b.co"})

    @pytest.mark.asyncio
    async def test_update_rejects_non_editable(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        user = await _user(users_schema, db)

        with pytest.raises(FieldNotEditable):
            await user.update({"id": 7})


# =============================================================================
# Soft Delete
# =============================================================================


class TestSoftDelete:
    """Tests for soft delete with the column configured."""

    @pytest.mark.asyncio
    async def test_soft_delete_hides_record(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        user = await _user(users_schema, db)

        assert await user.soft_delete() is True
        assert user.is_soft_deleted()

        with pytest.raises(RecordNotFound):
            await GenericRecord(users_schema, db).find(user.id)
        found = await GenericRecord(users_schema, db).find(user.id, with_deleted=True)
        assert found.is_soft_deleted()

    @pytest.mark.asyncio
    async def test_double_soft_delete(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        user = await _user(users_schema, db)
        await user.soft_delete()

        with pytest.raises(AlreadySoftDeleted):
            await user.soft_delete()

    @pytest.mark.asyncio
    async def test_restore(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        user = await _user(users_schema, db)
        await user.soft_delete()

        assert await user.restore() is True
        assert await user.restore() is False
        found = await GenericRecord(users_schema, db).find(user.id)
        assert not found.is_soft_deleted()

    @pytest.mark.asyncio
    async def test_delete_is_soft(self, users_schema: ModelSchema, db: DatabaseManager) -> None:
        user = await _user(users_schema, db)

        await user.delete()

        with db.connection() as conn:
            row = conn.execute('SELECT "deleted_at" FROM "users" WHERE "id" = ?', (user.id,)).fetchone()
        assert row is not None
        assert row["deleted_at"]

    @pytest.mark.asyncio
    async def test_empty_string_marker_is_active(
        self, users_schema: ModelSchema, db: DatabaseManager
    ) -> None:
        user = await _user(users_schema, db)
        with db.connection() as conn:
            conn.execute('UPDATE "users" SET "deleted_at" = \'\' WHERE "id" = ?', (user.id,))

        found = await GenericRecord(users_schema, db).find(user.id)

        assert not found.is_soft_deleted()
        assert await found.soft_delete() is True


@pytest.mark.parametrize("column", [None, ""])
class TestSoftDeleteDisabled:
    """An absent soft-delete column and a blank one behave identically."""

    @pytest.mark.asyncio
    async def test_marked_rows_still_visible(
        self, users_schema: ModelSchema, db: DatabaseManager, column: str | None
    ) -> None:
        schema = users_schema.model_copy(update={"soft_delete_column": column})
        user = await _user(users_schema, db)
        _mark_deleted(db, user.id)

        found = await GenericRecord(schema, db).find(user.id)

        assert not found.has_soft_deletes()
        assert not found.is_soft_deleted()

    @pytest.mark.asyncio
    async def test_soft_delete_and_restore_are_noops(
        self, users_schema: ModelSchema, db: DatabaseManager, column: str | None
    ) -> None:
        schema = users_schema.model_copy(update={"soft_delete_column": column})
        user = await _user(schema, db)

        assert await user.soft_delete() is False
        assert await user.restore() is False
        assert (await GenericRecord(schema, db).find(user.id)).id == user.id

    @pytest.mark.asyncio
    async def test_delete_is_hard(
        self, users_schema: ModelSchema, db: DatabaseManager, column: str | None
    ) -> None:
        schema = users_schema.model_copy(update={"soft_delete_column": column})
        user = await _user(schema, db)

        assert await user.delete() is True

        with pytest.raises(RecordNotFound):
            await GenericRecord(users_schema, db).find(user.id, with_deleted=True)

    @pytest.mark.asyncio
    async def test_update_marked_row(
        self, users_schema: ModelSchema, db: DatabaseManager, column: str | None
    ) -> None:
        schema = users_schema.model_copy(update={"soft_delete_column": column})
        user = await _user(schema, db)
        _mark_deleted(db, user.id)

        found = await GenericRecord(schema, db).find(user.id)
        await found.update({"user_name": "jonathan"})

        assert (await GenericRecord(schema, db).find(user.id)).get("user_name") == "jonathan"

    def test_listing_has_no_active_row_clause(
        self, users_schema: ModelSchema, column: str | None
    ) -> None:
        schema = users_schema.model_copy(update={"soft_delete_column": column})
        builder = ListQuery(schema, FieldTypeRegistry()).build(ListParams())

        for sql, _ in (builder.build_select(), builder.build_count(), builder.build_count(False)):
            assert "deleted_at" not in sql
            assert "''" not in sql

    @pytest.mark.asyncio
    async def test_listing_counts_marked_rows(
        self, users_schema: ModelSchema, db: DatabaseManager, column: str | None
    ) -> None:
        schema = users_schema.model_copy(update={"soft_delete_column": column})
        await _user(schema, db, "john")
        marked = await _user(schema, db, "alice")
        _mark_deleted(db, marked.id)

        result = ListQuery(schema, FieldTypeRegistry()).execute(db, ListParams())

        assert result.count == 2
        assert result.count_filtered == 2
        assert {row["user_name"] for row in result.rows} == {"john", "alice"}
