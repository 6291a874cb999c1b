"""
DuckDB Schema for the Sleeve Ledger
===================================

┌─────────────────────────────────────────────────────────────────────────────┐
│                               Ledger Store                                  │
│                                                                             │
│  clash_zones                    guid → flags, instance links, corners       │
│  cluster_sleeves                cluster_id → scope, content_guid, geometry  │
│  combined_sleeves               combined_id → content_hash, categories      │
│  combined_sleeve_constituents   constituent_id → combined_id, type, ref     │
│  category_processing_markers    category → last processed count            │
│  sleeve_snapshots               snapshot_id → parameter maps (JSON)         │
│  schema_migrations              version → applied_at                        │
└─────────────────────────────────────────────────────────────────────────────┘

Row ids come from sequences, always drawn explicitly with nextval() at insert
time, so tables created by older releases (no column default) keep working.

Only primary keys are indexed. DuckDB rewrites an UPDATE of an indexed
column as delete + insert, and the ledger updates flags, instance ids and
content hashes in place all the time. Uniqueness of content_guid and
content_hash, and the constituent → combined link, are kept by the
repositories.

Older stores wrote cluster_sleeves without content_guid and kept members in
clash_zone_ids_json. migrate() adds the new columns, records each
version in schema_migrations, and backfills content_guid; the layouts module
can still read an unmigrated table.
"""

from __future__ import annotations
from typing import List
import logging
import time

import duckdb

from .constants import (
    CLASH_ZONES,
    CLUSTER_SLEEVES,
    COMBINED_SLEEVES,
    COMBINED_CONSTITUENTS,
    PROCESSING_MARKERS,
    SCHEMA_MIGRATIONS,
    SLEEVE_SNAPSHOTS,
)
from .identity import compute_cluster_identity, normalize_guid
from .serialization import safe_str_list, to_json

logger = logging.getLogger(__name__)


# =============================================================================
# Column Sets
# =============================================================================

CORNER_COLUMNS = tuple(f"c{i}_{axis}" for i in range(1, 5) for axis in "xyz")

CLASH_ZONE_COLUMNS = (
    "guid", "mep_category", "mep_element_id", "host_element_id", "level_name",
    "ix", "iy", "iz",
    "is_resolved", "is_cluster_resolved", "is_combined_resolved", "is_current_clash",
    "sleeve_instance_id", "cluster_instance_id", "combined_instance_id",
    *CORNER_COLUMNS,
    "width", "height", "diameter", "rotation_deg",
    "created_at", "updated_at",
)

CLUSTER_COLUMNS = (
    "cluster_id", "cluster_instance_id", "combined_instance_id", "content_guid",
    "combo_id", "filter_id", "category",
    "min_x", "min_y", "min_z", "max_x", "max_y", "max_z",
    "width", "height", "depth", "rotation_deg", "is_rotated",
    "px", "py", "pz",
    *CORNER_COLUMNS,
    "host_type", "host_orientation",
    "constituent_guids_json",
    "created_at", "updated_at",
)

COMBINED_COLUMNS = (
    "combined_id", "combined_instance_id", "content_hash",
    "combo_id", "filter_id", "categories",
    "min_x", "min_y", "min_z", "max_x", "max_y", "max_z",
    "width", "height", "depth", "rotation_deg",
    "px", "py", "pz",
    *CORNER_COLUMNS,
    "host_type", "host_orientation",
    "created_at", "updated_at",
)

CONSTITUENT_COLUMNS = (
    "constituent_id", "combined_id", "constituent_type", "category",
    "clash_zone_guid", "cluster_instance_id", "cluster_db_id",
)

SNAPSHOT_COLUMNS = (
    "snapshot_id", "sleeve_instance_id", "cluster_instance_id", "source_type",
    "filter_id", "combo_id",
    "mep_element_ids_json", "host_element_ids_json",
    "mep_parameters_json", "host_parameters_json",
    "source_doc_keys_json", "host_doc_keys_json",
    "clash_zone_guid", "created_at", "updated_at",
)

MARKER_COLUMNS = (
    "category", "last_processed_count", "last_processed_ids", "marked_at", "updated_at",
)

SEQUENCES = {
    "seq_cluster_sleeves": (CLUSTER_SLEEVES, "cluster_id"),
    "seq_combined_sleeves": (COMBINED_SLEEVES, "combined_id"),
    "seq_combined_constituents": (COMBINED_CONSTITUENTS, "constituent_id"),
    "seq_sleeve_snapshots": (SLEEVE_SNAPSHOTS, "snapshot_id"),
}


def _corner_ddl() -> str:
    return ",\n".join(f"                {c} DOUBLE DEFAULT 0" for c in CORNER_COLUMNS)


# =============================================================================
# DDL
# =============================================================================

def _table_ddl() -> List[str]:
    corners = _corner_ddl()
    return [
        f"""
            CREATE TABLE IF NOT EXISTS {CLASH_ZONES} (
                guid VARCHAR PRIMARY KEY,
                mep_category VARCHAR NOT NULL,
                mep_element_id BIGINT DEFAULT 0,
                host_element_id BIGINT DEFAULT 0,
                level_name VARCHAR DEFAULT '',
                ix DOUBLE DEFAULT 0,
                iy DOUBLE DEFAULT 0,
                iz DOUBLE DEFAULT 0,
                is_resolved BOOLEAN DEFAULT FALSE,
                is_cluster_resolved BOOLEAN DEFAULT FALSE,
                is_combined_resolved BOOLEAN DEFAULT FALSE,
                is_current_clash BOOLEAN DEFAULT TRUE,
                sleeve_instance_id BIGINT DEFAULT -1,
                cluster_instance_id BIGINT DEFAULT -1,
                combined_instance_id BIGINT DEFAULT -1,
{corners},
                width DOUBLE DEFAULT 0,
                height DOUBLE DEFAULT 0,
                diameter DOUBLE DEFAULT 0,
                rotation_deg DOUBLE DEFAULT 0,
                created_at DOUBLE,
                updated_at DOUBLE
            )
        """,
        f"""
            CREATE TABLE IF NOT EXISTS {CLUSTER_SLEEVES} (
                cluster_id BIGINT PRIMARY KEY,
                cluster_instance_id BIGINT DEFAULT -1,
                combined_instance_id BIGINT DEFAULT -1,
                content_guid VARCHAR,
                combo_id BIGINT NOT NULL,
                filter_id BIGINT NOT NULL,
                category VARCHAR NOT NULL,
                min_x DOUBLE DEFAULT 0,
                min_y DOUBLE DEFAULT 0,
                min_z DOUBLE DEFAULT 0,
                max_x DOUBLE DEFAULT 0,
                max_y DOUBLE DEFAULT 0,
                max_z DOUBLE DEFAULT 0,
                width DOUBLE DEFAULT 0,
                height DOUBLE DEFAULT 0,
                depth DOUBLE DEFAULT 0,
                rotation_deg DOUBLE DEFAULT 0,
                is_rotated BOOLEAN DEFAULT FALSE,
                px DOUBLE DEFAULT 0,
                py DOUBLE DEFAULT 0,
                pz DOUBLE DEFAULT 0,
{corners},
                host_type VARCHAR DEFAULT '',
                host_orientation VARCHAR DEFAULT '',
                constituent_guids_json VARCHAR DEFAULT '[]',
                created_at DOUBLE,
                updated_at DOUBLE
            )
        """,
        f"""
            CREATE TABLE IF NOT EXISTS {COMBINED_SLEEVES} (
                combined_id BIGINT PRIMARY KEY,
                combined_instance_id BIGINT DEFAULT -1,
                content_hash VARCHAR,
                combo_id BIGINT NOT NULL,
                filter_id BIGINT NOT NULL,
                categories VARCHAR DEFAULT '',
                min_x DOUBLE DEFAULT 0,
                min_y DOUBLE DEFAULT 0,
                min_z DOUBLE DEFAULT 0,
                max_x DOUBLE DEFAULT 0,
                max_y DOUBLE DEFAULT 0,
                max_z DOUBLE DEFAULT 0,
                width DOUBLE DEFAULT 0,
                height DOUBLE DEFAULT 0,
                depth DOUBLE DEFAULT 0,
                rotation_deg DOUBLE DEFAULT 0,
                px DOUBLE DEFAULT 0,
                py DOUBLE DEFAULT 0,
                pz DOUBLE DEFAULT 0,
{corners},
                host_type VARCHAR DEFAULT '',
                host_orientation VARCHAR DEFAULT '',
                created_at DOUBLE,
                updated_at DOUBLE
            )
        """,
        f"""
            CREATE TABLE IF NOT EXISTS {COMBINED_CONSTITUENTS} (
                constituent_id BIGINT PRIMARY KEY,
                combined_id BIGINT NOT NULL,
                constituent_type VARCHAR NOT NULL,
                category VARCHAR NOT NULL,
                clash_zone_guid VARCHAR,
                cluster_instance_id BIGINT,
                cluster_db_id BIGINT
            )
        """,
        f"""
            CREATE TABLE IF NOT EXISTS {PROCESSING_MARKERS} (
                category VARCHAR PRIMARY KEY,
                last_processed_count BIGINT DEFAULT 0,
                last_processed_ids VARCHAR,
                marked_at DOUBLE,
                updated_at DOUBLE
            )
        """,
        f"""
            CREATE TABLE IF NOT EXISTS {SLEEVE_SNAPSHOTS} (
                snapshot_id BIGINT PRIMARY KEY,
                sleeve_instance_id BIGINT,
                cluster_instance_id BIGINT,
                source_type VARCHAR DEFAULT 'Individual',
                filter_id BIGINT,
                combo_id BIGINT,
                mep_element_ids_json VARCHAR DEFAULT '[]',
                host_element_ids_json VARCHAR DEFAULT '[]',
                mep_parameters_json VARCHAR DEFAULT '{{}}',
                host_parameters_json VARCHAR DEFAULT '{{}}',
                source_doc_keys_json VARCHAR DEFAULT '[]',
                host_doc_keys_json VARCHAR DEFAULT '[]',
                clash_zone_guid VARCHAR,
                created_at DOUBLE,
                updated_at DOUBLE
            )
        """,
        f"""
            CREATE TABLE IF NOT EXISTS {SCHEMA_MIGRATIONS} (
                version VARCHAR PRIMARY KEY,
                applied_at DOUBLE NOT NULL
            )
        """,
    ]


# Columns added after the first release, grouped by the migration that added
# them: (version, [(table, column, ddl type)])
MIGRATIONS = [
    ("001_cluster_content_identity", [
        (CLUSTER_SLEEVES, "content_guid", "VARCHAR"),
        (CLUSTER_SLEEVES, "constituent_guids_json", "VARCHAR DEFAULT '[]'"),
    ]),
    ("002_cluster_placement", [
        (CLUSTER_SLEEVES, "combined_instance_id", "BIGINT DEFAULT -1"),
        (CLUSTER_SLEEVES, "is_rotated", "BOOLEAN DEFAULT FALSE"),
        (CLUSTER_SLEEVES, "px", "DOUBLE DEFAULT 0"),
        (CLUSTER_SLEEVES, "py", "DOUBLE DEFAULT 0"),
        (CLUSTER_SLEEVES, "pz", "DOUBLE DEFAULT 0"),
    ]),
    ("003_snapshot_clash_zone_guid", [
        (SLEEVE_SNAPSHOTS, "clash_zone_guid", "VARCHAR"),
    ]),
    ("004_clash_zone_current_flag", [
        (CLASH_ZONES, "is_current_clash", "BOOLEAN DEFAULT TRUE"),
    ]),
    ("005_clash_zone_level", [
        (CLASH_ZONES, "level_name", "VARCHAR DEFAULT ''"),
    ]),
    ("006_host_bookkeeping", [
        (CLUSTER_SLEEVES, "host_type", "VARCHAR DEFAULT ''"),
        (CLUSTER_SLEEVES, "host_orientation", "VARCHAR DEFAULT ''"),
        (COMBINED_SLEEVES, "host_type", "VARCHAR DEFAULT ''"),
        (COMBINED_SLEEVES, "host_orientation", "VARCHAR DEFAULT ''"),
    ]),
]


# =============================================================================
# Schema Operations
# =============================================================================

def column_exists(conn: duckdb.DuckDBPyConnection, table: str, column: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM information_schema.columns WHERE table_name = ? AND column_name = ?",
        [table, column],
    ).fetchone()
    return row is not None


def add_column_if_missing(conn: duckdb.DuckDBPyConnection, table: str,
                          column: str, ddl_type: str) -> bool:
    """Run ALTER TABLE only when the column is absent. Returns True if added."""
    if column_exists(conn, table, column):
        return False
    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl_type}")
    logger.info("Migrated %s: added column %s", table, column)
    return True


def _ensure_sequences(conn: duckdb.DuckDBPyConnection) -> None:
    for seq_name, (table, id_column) in SEQUENCES.items():
        exists = conn.execute(
            "SELECT 1 FROM duckdb_sequences() WHERE sequence_name = ?", [seq_name]
        ).fetchone()
        if exists:
            continue
        # Start past any ids written before the sequence existed
        max_id = conn.execute(f"SELECT COALESCE(MAX({id_column}), 0) FROM {table}").fetchone()[0]
        conn.execute(f"CREATE SEQUENCE {seq_name} START {int(max_id) + 1}")


def restart_sequences(conn: duckdb.DuckDBPyConnection) -> None:
    """Recreate every id sequence at 1. Only valid once the tables are empty."""
    for seq_name in SEQUENCES:
        conn.execute(f"DROP SEQUENCE IF EXISTS {seq_name}")
        conn.execute(f"CREATE SEQUENCE {seq_name} START 1")


def backfill_cluster_identity(conn: duckdb.DuckDBPyConnection) -> int:
    """
    Fill content_guid / constituent_guids_json for rows written by the old
    layout, using the members recorded in clash_zone_ids_json.

    Returns the number of rows updated.
    """
    if not column_exists(conn, CLUSTER_SLEEVES, "clash_zone_ids_json"):
        return 0
    rows = conn.execute(f"""
        SELECT cluster_id, clash_zone_ids_json FROM {CLUSTER_SLEEVES}
        WHERE content_guid IS NULL
    """).fetchall()
    updated = 0
    for cluster_id, members_json in rows:
        members = safe_str_list(members_json, f"{CLUSTER_SLEEVES}.clash_zone_ids_json")
        guid = compute_cluster_identity(members)
        conn.execute(
            f"UPDATE {CLUSTER_SLEEVES} SET content_guid = ?, constituent_guids_json = ? "
            f"WHERE cluster_id = ?",
            [guid, to_json(sorted({normalize_guid(m) for m in members})), cluster_id],
        )
        updated += 1
    if updated:
        logger.info("Backfilled content_guid for %d legacy cluster row(s)", updated)
    return updated


def applied_migrations(conn: duckdb.DuckDBPyConnection) -> List[str]:
    rows = conn.execute(
        f"SELECT version FROM {SCHEMA_MIGRATIONS} ORDER BY version"
    ).fetchall()
    return [r[0] for r in rows]


def migrate(conn: duckdb.DuckDBPyConnection) -> List[str]:
    """
    Bring an existing store up to the current column layout.

    Each migration runs once and is recorded in schema_migrations. Column
    additions are still guarded by column_exists(), so a store created with
    the current DDL records every version without altering anything.

    Returns the versions applied by this call.
    """
    done = set(applied_migrations(conn))
    applied = []
    for version, columns in MIGRATIONS:
        if version in done:
            continue
        for table, column, ddl_type in columns:
            add_column_if_missing(conn, table, column, ddl_type)
        conn.execute(
            f"INSERT INTO {SCHEMA_MIGRATIONS} (version, applied_at) VALUES (?, ?)",
            [version, time.time()],
        )
        applied.append(version)
    if applied:
        logger.debug("Recorded schema migration(s): %s", ", ".join(applied))
    backfill_cluster_identity(conn)
    return applied


def init_schema(conn: duckdb.DuckDBPyConnection, auto_migrate: bool = True) -> None:
    """Create tables and sequences if they don't exist, then migrate."""
    for ddl in _table_ddl():
        conn.execute(ddl)
    if auto_migrate:
        migrate(conn)
    _ensure_sequences(conn)
    # Constituents are never updated in place, so this index is safe
    conn.execute(
        f"CREATE INDEX IF NOT EXISTS idx_constituents_combined "
        f"ON {COMBINED_CONSTITUENTS}(combined_id)"
    )


def row_to_dict(columns, row) -> dict:
    return dict(zip(columns, row))


def placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


def table_counts(conn: duckdb.DuckDBPyConnection, tables) -> dict:
    counts = {}
    for table in tables:
        counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    return counts


def is_missing_column_error(error: Exception) -> bool:
    """True for DuckDB's binder error on a column the table doesn't have."""
    if not isinstance(error, duckdb.BinderException):
        return False
    message = str(error).lower()
    return "not found" in message or "does not have a column" in message
