"""
Sleeve snapshot persistence and SnapshotIndex construction.

Snapshots are keyed by sleeve instance id (individual) or cluster instance
id (cluster); saving again for the same key replaces the parameter maps.
Loading tolerates bad rows: malformed JSON decodes to empty values, and a
row that cannot be decoded at all is skipped with a warning.
"""

from __future__ import annotations
from typing import Any, List, Optional
import logging
import time

import duckdb

from ..constants import (
    CLASH_ZONES,
    COMBINED_CONSTITUENTS,
    COMBINED_SLEEVES,
    CONSTITUENT_CLUSTER,
    CONSTITUENT_INDIVIDUAL,
    SLEEVE_SNAPSHOTS,
)
from ..errors import SnapshotOperationError, ValidationError
from ..models import ConstituentSnapshotRef, SleeveSnapshotView
from ..schema import SNAPSHOT_COLUMNS, placeholders, row_to_dict
from ..serialization import safe_int_list, safe_json_dict, safe_str_list, to_json
from ..snapshot_index import SnapshotIndex
from .base import Repository, require_positive

logger = logging.getLogger(__name__)

_DATA_COLUMNS = SNAPSHOT_COLUMNS[1:-2]    # everything but snapshot_id and timestamps


def _snapshot_values(view: SleeveSnapshotView) -> List[Any]:
    values = {
        'sleeve_instance_id': view.sleeve_instance_id,
        'cluster_instance_id': view.cluster_instance_id,
        'source_type': view.source_type,
        'filter_id': view.filter_id,
        'combo_id': view.combo_id,
        'mep_element_ids_json': to_json(view.mep_element_ids),
        'host_element_ids_json': to_json(view.host_element_ids),
        'mep_parameters_json': to_json(view.mep_parameters),
        'host_parameters_json': to_json(view.host_parameters),
        'source_doc_keys_json': to_json(view.source_doc_keys),
        'host_doc_keys_json': to_json(view.host_doc_keys),
        'clash_zone_guid': view.clash_zone_guid,
    }
    return [values[c] for c in _DATA_COLUMNS]


def _row_to_view(row) -> SleeveSnapshotView:
    v = row_to_dict(SNAPSHOT_COLUMNS, row)
    where = f"{SLEEVE_SNAPSHOTS}[{v['snapshot_id']}]"
    return SleeveSnapshotView(
        snapshot_id=v['snapshot_id'],
        sleeve_instance_id=v['sleeve_instance_id'],
        cluster_instance_id=v['cluster_instance_id'],
        source_type=v['source_type'] or CONSTITUENT_INDIVIDUAL,
        filter_id=v['filter_id'],
        combo_id=v['combo_id'],
        mep_element_ids=safe_int_list(v['mep_element_ids_json'], f"{where}.mep_element_ids_json"),
        host_element_ids=safe_int_list(v['host_element_ids_json'], f"{where}.host_element_ids_json"),
        mep_parameters=safe_json_dict(v['mep_parameters_json'], f"{where}.mep_parameters_json"),
        host_parameters=safe_json_dict(v['host_parameters_json'], f"{where}.host_parameters_json"),
        source_doc_keys=safe_str_list(v['source_doc_keys_json'], f"{where}.source_doc_keys_json"),
        host_doc_keys=safe_str_list(v['host_doc_keys_json'], f"{where}.host_doc_keys_json"),
        clash_zone_guid=v['clash_zone_guid'] or None,
    )


class SleeveSnapshotRepository(Repository):
    """Writes snapshots and builds the per-session SnapshotIndex."""

    table = SLEEVE_SNAPSHOTS
    error_class = SnapshotOperationError

    def _key(self, view: SleeveSnapshotView):
        if view.source_type == CONSTITUENT_CLUSTER:
            return "cluster_instance_id", require_positive("cluster_instance_id", view.cluster_instance_id)
        if view.source_type == CONSTITUENT_INDIVIDUAL:
            return "sleeve_instance_id", require_positive("sleeve_instance_id", view.sleeve_instance_id)
        raise ValidationError("source_type", f"unknown snapshot source {view.source_type!r}")

    def save_snapshot(self, view: SleeveSnapshotView) -> int:
        """Insert or replace the snapshot for the view's sleeve/cluster. Returns snapshot_id."""
        key_column, key_value = self._key(view)
        now = time.time()
        with self._write("save") as conn:
            row = conn.execute(
                f"SELECT snapshot_id FROM {SLEEVE_SNAPSHOTS} WHERE {key_column} = ? "
                f"ORDER BY snapshot_id LIMIT 1", [key_value]
            ).fetchone()
            if row is not None:
                snapshot_id = int(row[0])
                conn.execute(
                    f"UPDATE {SLEEVE_SNAPSHOTS} SET "
                    + ", ".join(f"{c} = ?" for c in _DATA_COLUMNS)
                    + ", updated_at = ? WHERE snapshot_id = ?",
                    _snapshot_values(view) + [now, snapshot_id],
                )
                operation = "UPDATE"
            else:
                snapshot_id = int(conn.execute(
                    f"INSERT INTO {SLEEVE_SNAPSHOTS} (snapshot_id, {', '.join(_DATA_COLUMNS)}, "
                    f"created_at, updated_at) VALUES (nextval('seq_sleeve_snapshots'), "
                    f"{placeholders(len(_DATA_COLUMNS) + 2)}) RETURNING snapshot_id",
                    _snapshot_values(view) + [now, now],
                ).fetchone()[0])
                operation = "INSERT"
        view.snapshot_id = snapshot_id
        self._log(operation, {key_column: key_value, 'guid': view.clash_zone_guid}, 1)
        return snapshot_id

    def _select(self, where: str, params: List[Any]) -> List[SleeveSnapshotView]:
        rows = self.conn.execute(
            f"SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM {SLEEVE_SNAPSHOTS} {where} ORDER BY snapshot_id",
            params,
        ).fetchall()
        return [_row_to_view(r) for r in rows]

    def get_snapshot_for_sleeve(self, sleeve_instance_id: int) -> Optional[SleeveSnapshotView]:
        found = self._read("get_for_sleeve", [], self._select,
                           "WHERE sleeve_instance_id = ?", [sleeve_instance_id])
        return found[0] if found else None

    def get_snapshot_for_cluster(self, cluster_instance_id: int) -> Optional[SleeveSnapshotView]:
        found = self._read("get_for_cluster", [], self._select,
                           "WHERE cluster_instance_id = ?", [cluster_instance_id])
        return found[0] if found else None

    def delete_snapshot(self, snapshot_id: int) -> bool:
        with self._write("delete") as conn:
            rows = conn.execute(
                f"DELETE FROM {SLEEVE_SNAPSHOTS} WHERE snapshot_id = ? RETURNING snapshot_id",
                [snapshot_id],
            ).fetchall()
        return bool(rows)

    # -------------------------------------------------------------------------
    # Index
    # -------------------------------------------------------------------------

    def load_snapshot_index(self) -> SnapshotIndex:
        """
        Build the session's SnapshotIndex.

        Each of the three sources (snapshots, ClashZone GUID links, combined
        constituents) loads independently; a failure in one is logged and
        leaves that part empty.
        """
        index = SnapshotIndex()
        self._load_views(index)
        self._load_guid_links(index)
        self._load_combined_refs(index)
        stats = index.stats()
        logger.info("Loaded %d individual and %d cluster snapshot(s), %d combined definition(s)",
                    stats['sleeves'], stats['clusters'], stats['combined'])
        if index.is_empty and self.verbose:
            logger.debug("Snapshot index is empty")
        return index

    def _load_views(self, index: SnapshotIndex) -> None:
        try:
            rows = self.conn.execute(
                f"SELECT {', '.join(SNAPSHOT_COLUMNS)} FROM {SLEEVE_SNAPSHOTS} ORDER BY snapshot_id"
            ).fetchall()
        except duckdb.Error as e:
            logger.error("Failed to read snapshots: %s", e)
            return
        for row in rows:
            try:
                view = _row_to_view(row)
            except (TypeError, ValueError) as e:
                logger.warning("Failed to parse snapshot row %s: %s", row[0], e)
                continue
            if view.sleeve_instance_id is not None and view.sleeve_instance_id <= 0:
                logger.warning("Snapshot %s has invalid sleeve_instance_id=%s; not indexed by sleeve",
                               view.snapshot_id, view.sleeve_instance_id)
            index.add(view)
            if self.verbose:
                logger.debug("Indexed snapshot %s (sleeve=%s, cluster=%s)", view.snapshot_id,
                             view.sleeve_instance_id, view.cluster_instance_id)

    def _load_guid_links(self, index: SnapshotIndex) -> None:
        try:
            rows = self.conn.execute(
                f"SELECT sleeve_instance_id, guid FROM {CLASH_ZONES} "
                f"WHERE sleeve_instance_id > 0 AND guid IS NOT NULL AND guid <> ''"
            ).fetchall()
        except duckdb.Error as e:
            logger.error("Failed to load sleeve id → GUID links: %s", e)
            return
        for sleeve_id, guid in rows:
            index.sleeve_id_to_guid[int(sleeve_id)] = guid

    def _load_combined_refs(self, index: SnapshotIndex) -> None:
        try:
            rows = self.conn.execute(f"""
                SELECT cs.combined_instance_id, c.constituent_type, c.clash_zone_guid, c.cluster_instance_id
                FROM {COMBINED_CONSTITUENTS} c
                INNER JOIN {COMBINED_SLEEVES} cs ON c.combined_id = cs.combined_id
                WHERE cs.combined_instance_id > 0
                ORDER BY c.constituent_id
            """).fetchall()
        except duckdb.Error as e:
            logger.error("Failed to load combined constituents: %s", e)
            return
        for combined_instance_id, source_type, guid, cluster_instance_id in rows:
            index.by_combined.setdefault(int(combined_instance_id), []).append(
                ConstituentSnapshotRef(source_type=source_type, clash_zone_guid=guid,
                                       cluster_instance_id=cluster_instance_id)
            )
