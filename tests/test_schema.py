"""
Tests for schema migration and versioned table layouts
"""

import json

import duckdb
import pytest

from sleeve_ledger import ClusterSleeve, SchemaLayoutError, SleeveLedger, compute_cluster_identity
from sleeve_ledger.layouts import LEGACY_CLUSTER_COLUMNS, cluster_reader
from sleeve_ledger.schema import (
    MIGRATIONS,
    add_column_if_missing,
    applied_migrations,
    column_exists,
    init_schema,
    migrate,
)


MEMBERS = ["{aaaaaaaa-0000-0000-0000-000000000001}", "aaaaaaaa-0000-0000-0000-000000000002"]


def legacy_connection():
    """A store written before content GUIDs existed, holding cluster 41."""
    conn = duckdb.connect()
    int_columns = {"cluster_id", "cluster_instance_id", "combo_id", "filter_id"}
    text_columns = {"category", "clash_zone_ids_json"}
    ddl = []
    for column in LEGACY_CLUSTER_COLUMNS:
        if column in int_columns:
            ddl.append(f"{column} BIGINT")
        elif column in text_columns:
            ddl.append(f"{column} VARCHAR")
        else:
            ddl.append(f"{column} DOUBLE DEFAULT 0")
    conn.execute(f"CREATE TABLE cluster_sleeves ({', '.join(ddl)})")
    conn.execute(
        "INSERT INTO cluster_sleeves (cluster_id, cluster_instance_id, combo_id, filter_id, "
        "category, min_x, min_y, min_z, max_x, max_y, max_z, clash_zone_ids_json) "
        "VALUES (41, 700, 1, 2, 'Pipes', 0, 0, 0, 2, 4, 6, ?)",
        [json.dumps(MEMBERS)],
    )
    return conn


class TestLegacyLayout:
    def test_read_without_migration(self):
        ledger = SleeveLedger(conn=legacy_connection(), auto_migrate=False)
        clusters = ledger.clusters.get_all_clusters()
        assert len(clusters) == 1
        cluster = clusters[0]
        assert cluster.content_guid == compute_cluster_identity(MEMBERS)
        assert cluster.cluster_instance_id == 700
        assert cluster.placement == (1.0, 2.0, 3.0)
        assert ledger.clusters.reader.active_layout.name == "legacy"

    def test_filters_on_missing_column(self):
        ledger = SleeveLedger(conn=legacy_connection(), auto_migrate=False)
        guid = compute_cluster_identity(MEMBERS)
        assert ledger.clusters.get_cluster_by_guid(guid).cluster_id == 41
        assert len(ledger.clusters.load_clusters_for_scope(1, 2, "Pipes")) == 1
        assert ledger.clusters.load_clusters_for_scope(1, 3, "Pipes") == []

    def test_migration_backfills_identity(self):
        conn = legacy_connection()
        ledger = SleeveLedger(conn=conn)
        assert column_exists(conn, "cluster_sleeves", "content_guid")
        guid = compute_cluster_identity(MEMBERS)
        stored = ledger.clusters.get_cluster_by_guid(guid)
        assert stored.cluster_id == 41
        assert stored.constituent_guids == sorted(m.strip("{}").upper() for m in MEMBERS)
        assert ledger.clusters.reader.active_layout.name == "current"

    def test_migrated_row_updated_not_duplicated(self):
        ledger = SleeveLedger(conn=legacy_connection())
        result = ledger.clusters.save_cluster(ClusterSleeve(1, 2, "Pipes", constituent_guids=MEMBERS))
        assert not result.inserted
        assert result.record_id == 41
        assert ledger.clusters.get_all_clusters()[0].cluster_instance_id == 700

    def test_sequence_starts_after_existing_ids(self):
        ledger = SleeveLedger(conn=legacy_connection())
        result = ledger.clusters.save_cluster(
            ClusterSleeve(1, 2, "Pipes", constituent_guids=["bbbbbbbb-0000-0000-0000-000000000001"])
        )
        assert result.record_id == 42

    def test_unknown_layout(self):
        conn = duckdb.connect()
        conn.execute("CREATE TABLE cluster_sleeves (foo INTEGER)")
        with pytest.raises(SchemaLayoutError):
            cluster_reader(conn).read()


class TestSchemaHelpers:
    def test_init_schema_is_idempotent(self):
        conn = duckdb.connect()
        init_schema(conn)
        init_schema(conn)
        assert column_exists(conn, "clash_zones", "guid")

    def test_add_column_if_missing(self):
        conn = duckdb.connect()
        conn.execute("CREATE TABLE t (a INTEGER)")
        assert add_column_if_missing(conn, "t", "b", "VARCHAR")
        assert not add_column_if_missing(conn, "t", "b", "VARCHAR")
        assert column_exists(conn, "t", "b")


class TestMigrationHistory:
    def test_fresh_store_records_every_version(self):
        conn = duckdb.connect()
        init_schema(conn)
        assert applied_migrations(conn) == sorted(v for v, _ in MIGRATIONS)

    def test_recorded_versions_not_rerun(self):
        conn = duckdb.connect()
        init_schema(conn)
        history = "SELECT version, applied_at FROM schema_migrations ORDER BY version"
        before = conn.execute(history).fetchall()
        assert migrate(conn) == []
        init_schema(conn)
        assert conn.execute(history).fetchall() == before

    def test_legacy_store_migrated_once(self):
        conn = legacy_connection()
        SleeveLedger(conn=conn)
        assert column_exists(conn, "cluster_sleeves", "host_type")
        assert column_exists(conn, "clash_zones", "level_name")
        assert applied_migrations(conn) == sorted(v for v, _ in MIGRATIONS)

    def test_unmigrated_store_records_nothing(self):
        conn = legacy_connection()
        SleeveLedger(conn=conn, auto_migrate=False)
        assert applied_migrations(conn) == []
        assert not column_exists(conn, "cluster_sleeves", "content_guid")
