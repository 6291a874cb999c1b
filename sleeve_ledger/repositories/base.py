"""
Repository plumbing shared by the record stores.

Writes go through `_write()`: the block joins (or opens) the session's
transaction, and any DuckDB failure is rolled back and re-raised as the
repository's domain error. Public reads go through `_read()`, which logs
and returns a fallback instead of raising.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Type
import logging

import duckdb

from ..errors import DatabaseOperationError, SchemaLayoutError, ValidationError
from ..logging_config import log_operation
from ..session import SleeveDatabase

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """
    Outcome of one upsert.

    `identity` is None when the record had no constituents; such a record is
    keyed by host instance id only and cannot be de-duplicated by content.
    """
    record_id: int
    identity: Optional[str]
    inserted: bool

    @property
    def degraded(self) -> bool:
        return self.identity is None


# =============================================================================
# Validation
# =============================================================================

def require_text(field: str, value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(field, "must be a non-empty string")
    return str(value)


def require_positive(field: str, value: Optional[int]) -> int:
    if value is None or isinstance(value, bool) or int(value) <= 0:
        raise ValidationError(field, f"must be a positive id, got {value!r}")
    return int(value)


def require_non_negative(field: str, value: Optional[int]) -> int:
    if value is None or isinstance(value, bool) or int(value) < 0:
        raise ValidationError(field, f"must be a non-negative id, got {value!r}")
    return int(value)


# =============================================================================
# Repository Base
# =============================================================================

class Repository:
    """Base for the DuckDB-backed record stores."""

    table: str = ""
    error_class: Type[DatabaseOperationError] = DatabaseOperationError

    def __init__(self, db: SleeveDatabase):
        self.db = db
        self.verbose = db.config.verbose

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        return self.db.conn

    @contextmanager
    def _write(self, operation: str) -> Iterator[duckdb.DuckDBPyConnection]:
        try:
            with self.db.unit_of_work() as conn:
                yield conn
        except duckdb.Error as e:
            logger.error("%s %s failed: %s", self.error_class.entity, operation, e)
            raise self.error_class(operation, str(e)) from e

    def _read(self, operation: str, fallback: Any, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except (duckdb.Error, SchemaLayoutError) as e:
            logger.error("%s %s failed, returning empty result: %s",
                         self.error_class.entity, operation, e)
            return fallback

    def _log(self, operation: str, params: Optional[Dict[str, Any]] = None,
             rows: Optional[int] = None, info: Optional[str] = None):
        if self.verbose:
            log_operation(logger, operation, self.table, params, rows, info)
