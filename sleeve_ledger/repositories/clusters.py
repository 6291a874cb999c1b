"""
ClusterSleeve Store: Upsert and Scoped Batch Save
=================================================

Single save (save_cluster):

    constituents ──dedupe──► content_guid
         │
         ├── row with content_guid?          → update in place
         ├── else row with instance id?      → update in place (membership changed)
         └── else                            → insert
         │
         └── cascade: members.is_cluster_resolved = TRUE (+ link instance id)

Batch save (batch_save_clusters), one transaction:

    scopes = {(combo_id, filter_id, category) for each record}
    for scope in scopes:  DELETE every row in scope
    DELETE rows elsewhere with a batch content_guid or host instance id
    for record:           INSERT fresh, cascade flags

A changed membership is a different cluster, not an edit of the old one, so
the old row has to go. Leaving it would keep a ghost cluster with a stale
GUID next to the new one. Any failure rolls the whole batch back.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
import logging
import time

from ..constants import CLUSTER_SLEEVES, CONSTITUENT_CLUSTER, SLEEVE_SNAPSHOTS, UNASSIGNED_ID
from ..errors import ClusterSleeveOperationError, ValidationError
from ..identity import normalize_guid
from ..layouts import cluster_reader
from ..models import ClusterSleeve, MarkableSleeve, flatten_corners
from ..schema import CLUSTER_COLUMNS, CORNER_COLUMNS, placeholders
from ..serialization import safe_json_dict, safe_str_list, to_json
from ..session import SleeveDatabase
from .base import Repository, SaveResult, require_non_negative, require_positive, require_text
from .clash_zones import ClashZoneRepository

logger = logging.getLogger(__name__)

Scope = Tuple[int, int, str]

_INSERT_COLUMNS = CLUSTER_COLUMNS[1:]   # cluster_id comes from the sequence
_UPDATE_COLUMNS = tuple(c for c in _INSERT_COLUMNS if c != "created_at")


def _cluster_values(cluster: ClusterSleeve, created_at: float, updated_at: float) -> Dict[str, Any]:
    values = {
        'cluster_instance_id': cluster.cluster_instance_id,
        'combined_instance_id': cluster.combined_instance_id,
        'content_guid': cluster.content_guid,
        'combo_id': cluster.combo_id,
        'filter_id': cluster.filter_id,
        'category': cluster.category,
        'min_x': cluster.bbox_min[0], 'min_y': cluster.bbox_min[1], 'min_z': cluster.bbox_min[2],
        'max_x': cluster.bbox_max[0], 'max_y': cluster.bbox_max[1], 'max_z': cluster.bbox_max[2],
        'width': cluster.width,
        'height': cluster.height,
        'depth': cluster.depth,
        'rotation_deg': cluster.rotation_deg,
        'is_rotated': cluster.is_rotated,
        'px': cluster.placement[0], 'py': cluster.placement[1], 'pz': cluster.placement[2],
        'host_type': cluster.host_type or "",
        'host_orientation': cluster.host_orientation or "",
        'constituent_guids_json': to_json(cluster.constituent_guids),
        'created_at': created_at,
        'updated_at': updated_at,
    }
    values.update(zip(CORNER_COLUMNS, flatten_corners(cluster.corners)))
    return values


class ClusterSleeveRepository(Repository):
    """Upsert engine and queries for cluster_sleeves."""

    table = CLUSTER_SLEEVES
    error_class = ClusterSleeveOperationError

    def __init__(self, db: SleeveDatabase, clash_zones: ClashZoneRepository):
        super().__init__(db)
        self.clash_zones = clash_zones
        self.reader = cluster_reader(db.conn)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _prepare(self, cluster: ClusterSleeve) -> ClusterSleeve:
        require_non_negative("combo_id", cluster.combo_id)
        require_non_negative("filter_id", cluster.filter_id)
        require_text("category", cluster.category)
        cluster.refresh_identity()
        if cluster.content_guid is None:
            if cluster.cluster_instance_id is None or cluster.cluster_instance_id <= 0:
                raise ValidationError(
                    "constituent_guids",
                    "cluster has no constituents and no host instance id to key on",
                )
            logger.warning("Cluster %d has no constituents; keyed by instance id only",
                           cluster.cluster_instance_id)
        return cluster

    # -------------------------------------------------------------------------
    # Row Operations (raise; callers hold a transaction)
    # -------------------------------------------------------------------------

    def _find(self, conn, column: str, value: Any) -> Optional[tuple]:
        """(cluster_id, created_at, cluster_instance_id, combined_instance_id) or None."""
        row = conn.execute(
            f"SELECT cluster_id, created_at, cluster_instance_id, combined_instance_id "
            f"FROM {CLUSTER_SLEEVES} WHERE {column} = ? ORDER BY cluster_id LIMIT 1", [value]
        ).fetchone()
        return tuple(row) if row else None

    def _insert_cluster(self, conn, cluster: ClusterSleeve, created_at: float, now: float) -> int:
        values = _cluster_values(cluster, created_at, now)
        row = conn.execute(
            f"INSERT INTO {CLUSTER_SLEEVES} (cluster_id, {', '.join(_INSERT_COLUMNS)}) "
            f"VALUES (nextval('seq_cluster_sleeves'), {placeholders(len(_INSERT_COLUMNS))}) "
            f"RETURNING cluster_id",
            [values[c] for c in _INSERT_COLUMNS],
        ).fetchone()
        return int(row[0])

    def _update_cluster(self, conn, cluster_id: int, cluster: ClusterSleeve, now: float):
        values = _cluster_values(cluster, now, now)
        conn.execute(
            f"UPDATE {CLUSTER_SLEEVES} SET "
            + ", ".join(f"{c} = ?" for c in _UPDATE_COLUMNS)
            + " WHERE cluster_id = ?",
            [values[c] for c in _UPDATE_COLUMNS] + [cluster_id],
        )

    def _cascade(self, cluster: ClusterSleeve) -> int:
        if not cluster.constituent_guids:
            return 0
        return self.clash_zones.mark_cluster_resolved(cluster.constituent_guids,
                                                      cluster.cluster_instance_id)

    # -------------------------------------------------------------------------
    # Upsert
    # -------------------------------------------------------------------------

    def save_cluster(self, cluster: ClusterSleeve) -> SaveResult:
        """
        Upsert one cluster: content GUID match, then instance id match, then
        insert. Updates keep created_at. Members are flagged cluster-resolved.
        """
        self._prepare(cluster)
        now = time.time()
        with self._write("save") as conn:
            existing = None
            if cluster.content_guid is not None:
                existing = self._find(conn, "content_guid", cluster.content_guid)
            if existing is None and cluster.cluster_instance_id > 0:
                existing = self._find(conn, "cluster_instance_id", cluster.cluster_instance_id)

            if existing is not None:
                cluster_id, created_at, instance_id, combined_id = existing
                # Placement links survive a re-save that does not carry them
                if cluster.cluster_instance_id <= 0 and (instance_id or 0) > 0:
                    cluster.cluster_instance_id = int(instance_id)
                if cluster.combined_instance_id <= 0 and (combined_id or 0) > 0:
                    cluster.combined_instance_id = int(combined_id)
                self._update_cluster(conn, cluster_id, cluster, now)
                cluster.created_at = created_at
                inserted = False
            else:
                cluster_id = self._insert_cluster(conn, cluster, now, now)
                cluster.created_at = now
                inserted = True
            cluster.cluster_id = cluster_id
            cluster.updated_at = now
            flagged = self._cascade(cluster)

        self._log("INSERT" if inserted else "UPDATE",
                  {'cluster_id': cluster_id, 'guid': cluster.content_guid, 'scope': cluster.scope},
                  1, f"{flagged} member(s) flagged")
        return SaveResult(cluster_id, cluster.content_guid, inserted)

    def batch_save_clusters(self, clusters: List[ClusterSleeve]) -> List[SaveResult]:
        """
        Replace every touched scope with the given clusters, atomically.

        Validation runs over the whole batch before anything is written.
        A host instance id already recorded for an unchanged cluster is kept
        when the incoming record has none.
        """
        for cluster in clusters:
            self._prepare(cluster)
        batch = self._dedupe_batch(clusters)
        if not batch:
            return []

        scopes: List[Scope] = sorted({c.scope for c in batch})
        now = time.time()
        results = []
        with self._write("batch_save") as conn:
            by_guid, by_instance = self._snapshot_identities(conn, batch)
            deleted = 0
            for combo_id, filter_id, category in scopes:
                deleted += len(conn.execute(
                    f"DELETE FROM {CLUSTER_SLEEVES} "
                    f"WHERE combo_id = ? AND filter_id = ? AND category = ? RETURNING cluster_id",
                    [combo_id, filter_id, category],
                ).fetchall())
            # Same cluster (or same host element) previously saved under
            # another scope: it moves here
            guids = [c.content_guid for c in batch if c.content_guid]
            if guids:
                deleted += len(conn.execute(
                    f"DELETE FROM {CLUSTER_SLEEVES} "
                    f"WHERE content_guid IN ({placeholders(len(guids))}) RETURNING cluster_id",
                    guids,
                ).fetchall())
            instance_ids = [c.cluster_instance_id for c in batch if c.cluster_instance_id > 0]
            if instance_ids:
                deleted += len(conn.execute(
                    f"DELETE FROM {CLUSTER_SLEEVES} "
                    f"WHERE cluster_instance_id IN ({placeholders(len(instance_ids))}) "
                    f"RETURNING cluster_id",
                    instance_ids,
                ).fetchall())

            for cluster in batch:
                created_at = now
                prior = by_guid.get(cluster.content_guid) if cluster.content_guid else None
                if prior is not None:
                    created_at = prior[0] if prior[0] is not None else now
                    if cluster.cluster_instance_id <= 0 and prior[1] > 0:
                        cluster.cluster_instance_id = prior[1]
                elif cluster.cluster_instance_id > 0 and cluster.cluster_instance_id in by_instance:
                    prior = by_instance[cluster.cluster_instance_id]
                    created_at = prior[0] if prior[0] is not None else now
                cluster.cluster_id = self._insert_cluster(conn, cluster, created_at, now)
                cluster.created_at = created_at
                cluster.updated_at = now
                self._cascade(cluster)
                results.append(SaveResult(cluster.cluster_id, cluster.content_guid, prior is None))

        logger.info("Batch saved %d cluster(s) across %d scope(s), replaced %d row(s)",
                    len(batch), len(scopes), deleted)
        return results

    def _dedupe_batch(self, clusters: List[ClusterSleeve]) -> List[ClusterSleeve]:
        """One record per content GUID; the last occurrence wins."""
        by_guid: Dict[str, ClusterSleeve] = {}
        out: List[ClusterSleeve] = []
        for cluster in clusters:
            if cluster.content_guid is None:
                out.append(cluster)
                continue
            if cluster.content_guid in by_guid:
                logger.warning("Duplicate cluster %s in batch; keeping the last one",
                               cluster.content_guid)
            by_guid[cluster.content_guid] = cluster
        return list(by_guid.values()) + out

    def _snapshot_identities(self, conn, batch: List[ClusterSleeve]):
        """
        (created_at, cluster_instance_id) for rows about to be replaced,
        keyed two ways: by content_guid and by host instance id.
        """
        by_guid: Dict[str, Tuple[Optional[float], int]] = {}
        by_instance: Dict[int, Tuple[Optional[float], int]] = {}
        guids = [c.content_guid for c in batch if c.content_guid]
        if guids:
            rows = conn.execute(
                f"SELECT content_guid, created_at, cluster_instance_id FROM {CLUSTER_SLEEVES} "
                f"WHERE content_guid IN ({placeholders(len(guids))})",
                guids,
            ).fetchall()
            by_guid = {r[0]: (r[1], int(r[2]) if r[2] is not None else UNASSIGNED_ID) for r in rows}
        instance_ids = [c.cluster_instance_id for c in batch if c.cluster_instance_id > 0]
        if instance_ids:
            rows = conn.execute(
                f"SELECT cluster_instance_id, MIN(created_at) FROM {CLUSTER_SLEEVES} "
                f"WHERE cluster_instance_id IN ({placeholders(len(instance_ids))}) "
                f"GROUP BY cluster_instance_id",
                instance_ids,
            ).fetchall()
            by_instance = {int(r[0]): (r[1], int(r[0])) for r in rows}
        return by_guid, by_instance

    # -------------------------------------------------------------------------
    # Placement Updates and Deletes
    # -------------------------------------------------------------------------

    def update_cluster_instance_id(self, content_guid: str, cluster_instance_id: int) -> bool:
        """Record the host instance placed for a cluster and link its members."""
        require_positive("cluster_instance_id", cluster_instance_id)
        guid = normalize_guid(content_guid)
        with self._write("update_instance_id") as conn:
            rows = conn.execute(
                f"UPDATE {CLUSTER_SLEEVES} SET cluster_instance_id = ?, updated_at = ? "
                f"WHERE content_guid = ? RETURNING constituent_guids_json",
                [cluster_instance_id, time.time(), guid],
            ).fetchall()
            if not rows:
                return False
            for (members_json,) in rows:
                members = safe_str_list(members_json, f"{CLUSTER_SLEEVES}.constituent_guids_json")
                self.clash_zones.mark_cluster_resolved(members, cluster_instance_id)
        self._log("UPDATE", {'guid': guid, 'instance_id': cluster_instance_id}, len(rows))
        return True

    def set_combined_instance_id(self, cluster_instance_id: int, combined_instance_id: int) -> int:
        """Link a placed cluster to the combined sleeve that absorbed it."""
        with self._write("set_combined_instance_id") as conn:
            rows = conn.execute(
                f"UPDATE {CLUSTER_SLEEVES} SET combined_instance_id = ?, updated_at = ? "
                f"WHERE cluster_instance_id = ? RETURNING cluster_id",
                [combined_instance_id, time.time(), cluster_instance_id],
            ).fetchall()
        return len(rows)

    def delete_clusters_for_scope(self, combo_id: int, filter_id: int, category: str) -> int:
        with self._write("delete_scope") as conn:
            rows = conn.execute(
                f"DELETE FROM {CLUSTER_SLEEVES} "
                f"WHERE combo_id = ? AND filter_id = ? AND category = ? RETURNING cluster_id",
                [combo_id, filter_id, category],
            ).fetchall()
        self._log("DELETE", {'combo_id': combo_id, 'filter_id': filter_id,
                             'category': category}, len(rows))
        return len(rows)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def load_clusters_for_combo(self, combo_id: int, category: Optional[str] = None) -> List[ClusterSleeve]:
        return self._read("load_for_combo", [], self.reader.read,
                          combo_id=combo_id, category=category)

    def load_clusters_for_filter(self, filter_id: int, category: Optional[str] = None) -> List[ClusterSleeve]:
        return self._read("load_for_filter", [], self.reader.read,
                          filter_id=filter_id, category=category)

    def load_clusters_for_scope(self, combo_id: int, filter_id: int, category: str) -> List[ClusterSleeve]:
        return self._read("load_for_scope", [], self.reader.read,
                          combo_id=combo_id, filter_id=filter_id, category=category)

    def get_all_clusters(self) -> List[ClusterSleeve]:
        return self._read("list", [], self.reader.read)

    def get_cluster_by_guid(self, content_guid: str) -> Optional[ClusterSleeve]:
        found = self._read("get_by_guid", [], self.reader.read,
                           content_guid=normalize_guid(content_guid))
        return found[0] if found else None

    def get_cluster_by_instance_id(self, cluster_instance_id: int) -> Optional[ClusterSleeve]:
        found = self._read("get_by_instance_id", [], self.reader.read,
                           cluster_instance_id=cluster_instance_id)
        return found[0] if found else None

    def get_markable_clusters(self, category: Optional[str] = None) -> List[MarkableSleeve]:
        """Placed clusters with their snapshot parameters (empty when missing)."""
        params: List[Any] = []
        where = "WHERE c.cluster_instance_id > 0"
        if category:
            where += " AND c.category = ?"
            params.append(category)

        def query():
            rows = self.conn.execute(f"""
                SELECT c.cluster_instance_id, c.category, c.content_guid,
                       s.mep_parameters_json, s.host_parameters_json
                FROM {CLUSTER_SLEEVES} c
                LEFT JOIN {SLEEVE_SNAPSHOTS} s ON s.cluster_instance_id = c.cluster_instance_id
                {where}
                ORDER BY c.cluster_instance_id
            """, params).fetchall()
            return [
                MarkableSleeve(
                    source_type=CONSTITUENT_CLUSTER,
                    instance_id=int(r[0]),
                    category=r[1],
                    identity=r[2],
                    mep_parameters=safe_json_dict(r[3], "snapshot.mep_parameters_json"),
                    host_parameters=safe_json_dict(r[4], "snapshot.host_parameters_json"),
                )
                for r in rows
            ]

        return self._read("get_markable_clusters", [], query)
