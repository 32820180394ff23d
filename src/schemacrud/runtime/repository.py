"""
Storage access for schemacrud.

``DatabaseManager`` hands out SQLite connections scoped to one transaction:
committed on success, rolled back on any exception, and always closed.
``transaction()`` additionally translates storage errors into the error
taxonomy so raw engine text never leaves this module.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from schemacrud.errors import ConstraintViolation, StorageFailure
from schemacrud.runtime.logging import log_with_context

logger = logging.getLogger(__name__)


# =============================================================================
# Constraint Translation
# =============================================================================


def parse_constraint_error(exc: str | Exception) -> tuple[str, str | None]:
    """Parse a constraint error message to extract type and field.

    Returns:
        (constraint_type, field_name_or_none)
    """
    err = exc if isinstance(exc, str) else str(exc)

    # "UNIQUE constraint failed: users.email"
    if "UNIQUE constraint failed:" in err:
        parts = err.split("UNIQUE constraint failed:")[-1].strip()
        # Composite keys list several columns; report the first
        first = parts.split(",")[0].strip()
        field_name = first.split(".")[-1].strip() if first else None
        return "unique", field_name or None

    if "FOREIGN KEY constraint failed" in err:
        return "foreign_key", None

    # "NOT NULL constraint failed: users.email"
    match = re.search(r"NOT NULL constraint failed: (?:\w+\.)?(\w+)", err)
    if match:
        return "not_null", match.group(1)

    return "integrity", None


def constraint_violation(exc: sqlite3.IntegrityError, table: str) -> ConstraintViolation:
    """Build a ``ConstraintViolation`` from a storage integrity error."""
    constraint_type, field = parse_constraint_error(exc)
    if constraint_type == "unique":
        message = f"Duplicate value for '{field}' in {table}" if field else f"Duplicate value in {table}"
    elif constraint_type == "foreign_key":
        message = f"Referenced record does not exist ({table})"
    elif constraint_type == "not_null":
        message = f"Field '{field}' of {table} cannot be empty"
    else:
        message = f"Constraint violated in {table}"
    return ConstraintViolation(message, field=field, constraint_type=constraint_type)


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Manages SQLite connections.

    Pool sizing and connection lifetimes beyond one transaction are the
    host application's concern.
    """

    def __init__(self, db_path: str | Path = ".schemacrud/data.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a database connection context manager.

        Yields:
            SQLite connection
        """
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self, operation: str, table: str) -> Iterator[sqlite3.Connection]:
        """
        Scoped write transaction with error translation.

        Raises:
            ConstraintViolation: Unique / foreign-key / not-null failures
            StorageFailure: Any other storage error (engine text is logged only)
        """
        try:
            with self.connection() as conn:
                yield conn
        except sqlite3.IntegrityError as e:
            raise constraint_violation(e, table) from e
        except sqlite3.Error as e:
            log_with_context(
                logger,
                logging.ERROR,
                "Storage operation failed",
                operation=operation,
                table=table,
                error=str(e),
            )
            raise StorageFailure(operation) from e

    def table_exists(self, table: str) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (table,),
            )
            return cursor.fetchone() is not None
