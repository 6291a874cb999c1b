"""
Ledger Exceptions
=================

SleeveLedgerError
├── ValidationError          bad input, rejected before any write
├── TransactionError         transaction misuse on the single connection
├── SchemaLayoutError        no known column layout could decode a table
└── DatabaseOperationError   storage failure, already rolled back
    ├── ClashZoneOperationError
    ├── ClusterSleeveOperationError
    ├── CombinedSleeveOperationError
    ├── SnapshotOperationError
    └── MarkerOperationError

Malformed stored JSON is not an error here: readers substitute defaults and
log a warning.
"""
from __future__ import annotations
from typing import Optional


class SleeveLedgerError(Exception):
    """Base class for all ledger errors."""


class ValidationError(SleeveLedgerError):
    """A required key is missing or invalid."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class TransactionError(SleeveLedgerError):
    """Raised when a second transaction is started on a busy connection."""


class SchemaLayoutError(SleeveLedgerError):
    """Raised when neither the current nor a legacy layout can read a table."""


class DatabaseOperationError(SleeveLedgerError):
    """
    A write or query failed against the store.

    Names the entity and the operation so the caller can report it upward.
    The original driver exception is chained as __cause__.
    """
    entity = "record"

    def __init__(self, operation: str, message: str, entity: Optional[str] = None):
        if entity is not None:
            self.entity = entity
        self.operation = operation
        super().__init__(f"{self.entity} {operation} failed: {message}")


class ClashZoneOperationError(DatabaseOperationError):
    entity = "ClashZone"


class ClusterSleeveOperationError(DatabaseOperationError):
    entity = "ClusterSleeve"


class CombinedSleeveOperationError(DatabaseOperationError):
    entity = "CombinedSleeve"


class SnapshotOperationError(DatabaseOperationError):
    entity = "SleeveSnapshot"


class MarkerOperationError(DatabaseOperationError):
    entity = "ProcessingMarker"
