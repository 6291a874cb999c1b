"""
Tests for the SleeveLedger facade across detection runs
"""

from sleeve_ledger import (
    ClashZone,
    ClusterSleeve,
    CombinedSleeve,
    LedgerConfig,
    SleeveConstituent,
    SleeveLedger,
    compute_cluster_identity,
    create_ledger,
)
from sleeve_ledger.constants import CLASH_ZONES, CLUSTER_SLEEVES, COMBINED_SLEEVES


def detect(n, category="Pipes", host=2000):
    return [ClashZone.detect(1000 + i, host, (float(i), 0.0, 0.0), category) for i in range(n)]


def cluster_of(zones, **kwargs):
    return ClusterSleeve(1, 1, "Pipes", constituent_guids=[z.guid for z in zones], **kwargs)


class TestDetectionRuns:
    def test_rerun_reuses_identity_and_skips_processed(self):
        ledger = create_ledger()

        # First run
        zones = detect(6)
        source_ids = [z.guid for z in zones]
        assert ledger.incremental.get_new_sleeves_only("Pipes", source_ids) == source_ids
        with ledger.db.transaction():
            ledger.clash_zones.save_clash_zones(zones)
            first = ledger.clusters.batch_save_clusters([cluster_of(zones[:3], cluster_instance_id=500)])
        ledger.incremental.mark_category_processed("Pipes", source_ids)
        created_at = ledger.clusters.get_cluster_by_guid(first[0].identity).created_at

        # Second run: two new zones, the host re-created the cluster sleeve
        zones = detect(8)
        new_ids = ledger.incremental.get_new_sleeves_only("Pipes", [z.guid for z in zones])
        assert new_ids == [z.guid for z in zones[6:]]
        with ledger.db.transaction():
            ledger.clash_zones.save_clash_zones(zones[6:])
            second = ledger.clusters.batch_save_clusters([
                cluster_of(zones[:3], cluster_instance_id=900),
                cluster_of(zones[6:]),
            ])
        ledger.incremental.mark_category_processed("Pipes", [z.guid for z in zones])

        assert second[0].identity == first[0].identity
        assert not second[0].inserted
        stored = ledger.clusters.get_cluster_by_guid(first[0].identity)
        assert stored.cluster_instance_id == 900
        assert stored.created_at == created_at
        assert len(ledger.clusters.get_all_clusters()) == 2
        assert ledger.incremental.processing_summary() == {"Pipes": 8}

    def test_full_resolution_flow(self):
        ledger = create_ledger()
        pipes = detect(3)
        ducts = detect(1, "Ducts", host=3000)
        ledger.clash_zones.save_clash_zones(pipes + ducts)
        ledger.clusters.save_cluster(cluster_of(pipes, cluster_instance_id=500))
        ledger.combined.save_combined(CombinedSleeve(1, 1, combined_instance_id=800, constituents=[
            SleeveConstituent.cluster("Pipes", cluster_instance_id=500),
            SleeveConstituent.individual(ducts[0].guid, "Ducts"),
        ]))
        stats = ledger.clash_zones.flag_statistics()
        assert stats['combined_resolved'] == 4
        assert stats['cluster_resolved'] == 3
        assert stats['unresolved'] == 0
        counts = ledger.stats()
        assert counts[CLASH_ZONES] == 4
        assert counts[CLUSTER_SLEEVES] == 1
        assert counts[COMBINED_SLEEVES] == 1


class TestPersistence:
    def test_reopen_file_store(self, tmp_path):
        path = str(tmp_path / "sleeves.duckdb")
        zones = detect(2)
        with create_ledger(path) as ledger:
            first = ledger.clusters.save_cluster(cluster_of(zones))
            ledger.incremental.mark_category_processed("Pipes", 2)

        with SleeveLedger(LedgerConfig(db_path=path)) as ledger:
            assert ledger.clusters.get_cluster_by_guid(compute_cluster_identity([z.guid for z in zones]))
            assert ledger.markers.get_marker("Pipes") == (2, None)
            second = ledger.clusters.save_cluster(cluster_of(detect(4)[2:]))
            assert second.record_id > first.record_id

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SLEEVE_LEDGER_DB_PATH", str(tmp_path / "env.duckdb"))
        with SleeveLedger.from_env() as ledger:
            assert ledger.db.db_path.endswith("env.duckdb")
            assert ledger.stats()[CLASH_ZONES] == 0
