"""
Centralized configuration for schemacrud.

Read once from environment variables; ``get_config.cache_clear()`` resets it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import cache
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class CrudConfig:
    """Runtime configuration.

    Attributes:
        schema_path: Directory holding ``<model>.json`` / ``<model>.yaml`` files
        db_path: SQLite database file
        default_page_size: Page size used when a request does not give one
        max_page_size: Page size ceiling
        debug_mode: Emit verbose diagnostics (cache hits, dropped tokens)
        log_level: Minimum log level name
        log_dir: Optional directory for the JSONL log file
    """

    schema_path: Path = Path("schema/crud6")
    db_path: Path = Path(".schemacrud/data.db")
    default_page_size: int = 25
    max_page_size: int = 1000
    debug_mode: bool = False
    log_level: str = "INFO"
    log_dir: Path | None = None

    @property
    def log_level_value(self) -> int:
        """Numeric logging level (falls back to INFO)."""
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO


@cache
def get_config() -> CrudConfig:
    """Load configuration from environment variables.

    Environment variables:
        - SCHEMACRUD_SCHEMA_PATH → schema_path
        - SCHEMACRUD_DB_PATH → db_path
        - SCHEMACRUD_DEFAULT_PAGE_SIZE → default_page_size
        - SCHEMACRUD_MAX_PAGE_SIZE → max_page_size
        - SCHEMACRUD_DEBUG → debug_mode
        - SCHEMACRUD_LOG_LEVEL → log_level
        - SCHEMACRUD_LOG_DIR → log_dir

    Returns:
        CrudConfig with validated settings.
    """
    max_page_size = max(1, _env_int("SCHEMACRUD_MAX_PAGE_SIZE", 1000))
    default_page_size = min(
        max(1, _env_int("SCHEMACRUD_DEFAULT_PAGE_SIZE", 25)), max_page_size
    )
    log_dir = os.environ.get("SCHEMACRUD_LOG_DIR")

    return CrudConfig(
        schema_path=Path(os.environ.get("SCHEMACRUD_SCHEMA_PATH", "schema/crud6")),
        db_path=Path(os.environ.get("SCHEMACRUD_DB_PATH", ".schemacrud/data.db")),
        default_page_size=default_page_size,
        max_page_size=max_page_size,
        debug_mode=_env_bool("SCHEMACRUD_DEBUG"),
        log_level=os.environ.get("SCHEMACRUD_LOG_LEVEL", "INFO"),
        log_dir=Path(log_dir) if log_dir else None,
    )
