"""
SleeveLedger: one object wiring the stores onto a single connection.

    ledger = SleeveLedger(LedgerConfig(db_path="sleeves.duckdb"))

    new_ids = ledger.incremental.get_new_sleeves_only("Pipes", source_ids)
    with ledger.db.transaction():
        ledger.clusters.batch_save_clusters(clusters)
        ledger.combined.batch_save_combined(combined)
    ledger.incremental.mark_category_processed("Pipes", source_ids)

    index = ledger.snapshots.load_snapshot_index()
"""

from __future__ import annotations
from typing import Dict, Optional
import logging

import duckdb

from .config import LedgerConfig
from .markers import DuckDBMarkerStore, IncrementalProcessor
from .repositories import (
    ClashZoneRepository,
    ClusterSleeveRepository,
    CombinedSleeveRepository,
    SleeveSnapshotRepository,
)
from .session import SleeveDatabase

logger = logging.getLogger(__name__)


class SleeveLedger:
    """
    Session-scoped entry point.

    Args:
        config: Ledger configuration; defaults to an in-memory store
        conn: Existing DuckDB connection to adopt
        auto_migrate: Upgrade tables written by older releases on open
    """

    def __init__(self, config: Optional[LedgerConfig] = None,
                 conn: Optional[duckdb.DuckDBPyConnection] = None,
                 auto_migrate: bool = True):
        self.config = config or LedgerConfig()
        self.db = SleeveDatabase(self.config, conn=conn, auto_migrate=auto_migrate)
        self.clash_zones = ClashZoneRepository(self.db)
        self.clusters = ClusterSleeveRepository(self.db, self.clash_zones)
        self.combined = CombinedSleeveRepository(self.db, self.clash_zones, self.clusters)
        self.snapshots = SleeveSnapshotRepository(self.db)
        self.markers = DuckDBMarkerStore(self.db)
        self.incremental = IncrementalProcessor(self.markers, self.config)

    @classmethod
    def from_env(cls) -> 'SleeveLedger':
        return cls(LedgerConfig.from_env())

    def stats(self) -> Dict[str, int]:
        return self.db.table_counts()

    def close(self):
        self.db.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def create_ledger(db_path: str = ":memory:", verbose: bool = False) -> SleeveLedger:
    """Create ledger on a DuckDB file (or in memory)."""
    return SleeveLedger(LedgerConfig(db_path=db_path, verbose=verbose))
