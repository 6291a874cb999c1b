"""
Tests for the database session and transactions
"""

import duckdb
import pytest

from sleeve_ledger import ClashZone, ClusterSleeve, SleeveDatabase, TransactionError, create_ledger
from sleeve_ledger.constants import CLASH_ZONES, CLUSTER_SLEEVES
from sleeve_ledger.schema import applied_migrations


def make_zones(n, category="Pipes"):
    return [ClashZone.detect(1000 + i, 2000, (float(i), 0.0, 0.0), category) for i in range(n)]


class TestTransactions:
    def test_nested_transaction_rejected(self):
        db = SleeveDatabase()
        with pytest.raises(TransactionError):
            with db.transaction():
                with db.transaction():
                    pass
        assert not db.in_transaction

    def test_commit(self):
        ledger = create_ledger()
        with ledger.db.transaction():
            ledger.clash_zones.save_clash_zones(make_zones(3))
        assert ledger.stats()[CLASH_ZONES] == 3

    def test_rollback_discards_every_write(self):
        ledger = create_ledger()
        zones = make_zones(3)
        with pytest.raises(RuntimeError):
            with ledger.db.transaction():
                ledger.clash_zones.save_clash_zones(zones)
                ledger.clusters.save_cluster(
                    ClusterSleeve(1, 1, "Pipes", constituent_guids=[z.guid for z in zones])
                )
                raise RuntimeError("placement failed")
        counts = ledger.stats()
        assert counts[CLASH_ZONES] == 0
        assert counts[CLUSTER_SLEEVES] == 0
        assert not ledger.db.in_transaction

    def test_repository_write_opens_own_transaction(self):
        ledger = create_ledger()
        ledger.clash_zones.save_clash_zones(make_zones(2))
        assert not ledger.db.in_transaction
        assert ledger.stats()[CLASH_ZONES] == 2

    def test_unit_of_work_joins_ambient_transaction(self):
        db = SleeveDatabase()
        with db.transaction() as outer:
            with db.unit_of_work() as inner:
                assert inner is outer
                assert db.in_transaction
            assert db.in_transaction
        assert not db.in_transaction


class TestConnectionOwnership:
    def test_close_inside_transaction_rejected(self):
        db = SleeveDatabase()
        with db.transaction():
            with pytest.raises(TransactionError):
                db.close()
        db.close()

    def test_adopted_connection_left_open(self):
        conn = duckdb.connect()
        with SleeveDatabase(conn=conn):
            pass
        assert conn.execute("SELECT COUNT(*) FROM clash_zones").fetchone()[0] == 0

    def test_table_counts_cover_every_table(self):
        db = SleeveDatabase()
        counts = db.table_counts()
        assert set(counts) == {
            "clash_zones", "cluster_sleeves", "combined_sleeves",
            "combined_sleeve_constituents", "category_processing_markers", "sleeve_snapshots",
        }
        assert all(v == 0 for v in counts.values())


class TestClearAllTables:
    def populated(self):
        ledger = create_ledger()
        zones = make_zones(3)
        ledger.clash_zones.save_clash_zones(zones)
        ledger.clusters.save_cluster(
            ClusterSleeve(1, 1, "Pipes", constituent_guids=[z.guid for z in zones[:2]],
                          cluster_instance_id=500)
        )
        ledger.incremental.mark_category_processed("Pipes", 3)
        return ledger

    def test_every_table_emptied(self):
        ledger = self.populated()
        deleted = ledger.db.clear_all_tables()
        assert deleted[CLASH_ZONES] == 3
        assert deleted[CLUSTER_SLEEVES] == 1
        assert all(v == 0 for v in ledger.stats().values())
        assert ledger.incremental.processing_summary() == {}

    def test_sequences_restart(self):
        ledger = self.populated()
        ledger.db.clear_all_tables()
        result = ledger.clusters.save_cluster(
            ClusterSleeve(1, 1, "Pipes", constituent_guids=[make_zones(1)[0].guid])
        )
        assert result.record_id == 1

    def test_migration_history_kept(self):
        ledger = self.populated()
        before = applied_migrations(ledger.db.conn)
        ledger.db.clear_all_tables()
        assert applied_migrations(ledger.db.conn) == before

    def test_rejected_inside_transaction(self):
        ledger = self.populated()
        with pytest.raises(TransactionError):
            with ledger.db.transaction():
                ledger.db.clear_all_tables()
        assert ledger.stats()[CLASH_ZONES] == 3
