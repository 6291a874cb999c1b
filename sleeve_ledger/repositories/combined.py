"""
CombinedSleeve Store
====================

A combined sleeve owns its constituent rows:

    combined_sleeves (combined_id) ◄── combined_sleeve_constituents (combined_id)

Constituent rows are always replaced wholesale on save, never patched, and
deleted before their parent.

Resolving a combined sleeve cascades to the ClashZones underneath:

    Individual constituent  → that zone:             is_combined_resolved
    Cluster constituent     → every zone of cluster: is_combined_resolved
                              the cluster row:       combined_instance_id
"""

from __future__ import annotations
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence
import logging
import time

from ..constants import COMBINED_SLEEVES, COMBINED_CONSTITUENTS, UNASSIGNED_ID
from ..errors import CombinedSleeveOperationError, ValidationError
from ..identity import dedupe_preserving_order, is_best_effort_identity
from ..models import (
    CombinedSleeve,
    ConstituentType,
    SleeveConstituent,
    as_corners,
    bounding_box,
    flatten_corners,
    unflatten_corners,
)
from ..schema import COMBINED_COLUMNS, CONSTITUENT_COLUMNS, CORNER_COLUMNS, placeholders, row_to_dict
from ..serialization import split_csv
from ..session import SleeveDatabase
from .base import Repository, SaveResult, require_non_negative, require_positive, require_text
from .clash_zones import ClashZoneRepository
from .clusters import ClusterSleeveRepository

logger = logging.getLogger(__name__)

_INSERT_COLUMNS = COMBINED_COLUMNS[1:]
_UPDATE_COLUMNS = tuple(c for c in _INSERT_COLUMNS if c != "created_at")


def _combined_values(sleeve: CombinedSleeve, created_at: float, updated_at: float) -> Dict[str, Any]:
    values = {
        'combined_instance_id': sleeve.combined_instance_id,
        'content_hash': sleeve.content_hash,
        'combo_id': sleeve.combo_id,
        'filter_id': sleeve.filter_id,
        'categories': ",".join(sleeve.categories),
        'min_x': sleeve.bbox_min[0], 'min_y': sleeve.bbox_min[1], 'min_z': sleeve.bbox_min[2],
        'max_x': sleeve.bbox_max[0], 'max_y': sleeve.bbox_max[1], 'max_z': sleeve.bbox_max[2],
        'width': sleeve.width,
        'height': sleeve.height,
        'depth': sleeve.depth,
        'rotation_deg': sleeve.rotation_deg,
        'px': sleeve.placement[0], 'py': sleeve.placement[1], 'pz': sleeve.placement[2],
        'host_type': sleeve.host_type or "",
        'host_orientation': sleeve.host_orientation or "",
        'created_at': created_at,
        'updated_at': updated_at,
    }
    values.update(zip(CORNER_COLUMNS, flatten_corners(sleeve.corners)))
    return values


def _row_to_combined(row) -> CombinedSleeve:
    v = row_to_dict(COMBINED_COLUMNS, row)
    return CombinedSleeve(
        combo_id=v['combo_id'],
        filter_id=v['filter_id'],
        categories=split_csv(v['categories']),
        combined_id=v['combined_id'],
        combined_instance_id=v['combined_instance_id'] if v['combined_instance_id'] is not None else UNASSIGNED_ID,
        content_hash=v['content_hash'],
        bbox_min=(v['min_x'], v['min_y'], v['min_z']),
        bbox_max=(v['max_x'], v['max_y'], v['max_z']),
        width=v['width'] or 0.0,
        height=v['height'] or 0.0,
        depth=v['depth'] or 0.0,
        rotation_deg=v['rotation_deg'] or 0.0,
        placement=(v['px'], v['py'], v['pz']),
        corners=unflatten_corners([v[c] for c in CORNER_COLUMNS]),
        host_type=v['host_type'] or "",
        host_orientation=v['host_orientation'] or "",
        created_at=v['created_at'],
        updated_at=v['updated_at'],
    )


def _row_to_constituent(row) -> SleeveConstituent:
    v = row_to_dict(CONSTITUENT_COLUMNS, row)
    return SleeveConstituent(
        constituent_type=v['constituent_type'],
        category=v['category'],
        clash_zone_guid=v['clash_zone_guid'],
        cluster_instance_id=v['cluster_instance_id'],
        cluster_db_id=v['cluster_db_id'],
        constituent_id=v['constituent_id'],
        combined_id=v['combined_id'],
    )


class CombinedSleeveRepository(Repository):
    """Upsert engine and queries for combined sleeves and their constituents."""

    table = COMBINED_SLEEVES
    error_class = CombinedSleeveOperationError

    def __init__(self, db: SleeveDatabase, clash_zones: ClashZoneRepository,
                 clusters: ClusterSleeveRepository):
        super().__init__(db)
        self.clash_zones = clash_zones
        self.clusters = clusters

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _prepare(self, sleeve: CombinedSleeve) -> CombinedSleeve:
        require_non_negative("combo_id", sleeve.combo_id)
        require_non_negative("filter_id", sleeve.filter_id)
        for c in sleeve.constituents:
            require_text("constituent.category", c.category)
        sleeve.refresh_identity()
        keys = [c.identity_key() for c in sleeve.constituents]
        if sleeve.content_hash is None:
            if sleeve.combined_instance_id is None or sleeve.combined_instance_id <= 0:
                raise ValidationError(
                    "constituents",
                    "combined sleeve has no keyable constituents and no host instance id",
                )
            logger.warning("Combined sleeve %d has no keyable constituents; keyed by instance id only",
                           sleeve.combined_instance_id)
        elif is_best_effort_identity(keys):
            logger.info("Combined sleeve identity uses unplaced cluster row ids and may "
                        "change on the next run")
        return sleeve

    # -------------------------------------------------------------------------
    # Row Operations
    # -------------------------------------------------------------------------

    def _find(self, conn, column: str, value: Any) -> Optional[tuple]:
        row = conn.execute(
            f"SELECT combined_id, created_at, combined_instance_id FROM {COMBINED_SLEEVES} "
            f"WHERE {column} = ? ORDER BY combined_id LIMIT 1", [value]
        ).fetchone()
        return tuple(row) if row else None

    def _replace_constituents(self, conn, combined_id: int,
                              constituents: Sequence[SleeveConstituent]) -> None:
        conn.execute(f"DELETE FROM {COMBINED_CONSTITUENTS} WHERE combined_id = ?", [combined_id])
        columns = CONSTITUENT_COLUMNS[1:]
        sql = (f"INSERT INTO {COMBINED_CONSTITUENTS} (constituent_id, {', '.join(columns)}) "
               f"VALUES (nextval('seq_combined_constituents'), {placeholders(len(columns))}) "
               f"RETURNING constituent_id")
        for c in constituents:
            c.combined_id = combined_id
            values = c.to_dict()
            c.constituent_id = int(conn.execute(sql, [values[col] for col in columns]).fetchone()[0])

    def _upsert(self, conn, sleeve: CombinedSleeve, now: float) -> SaveResult:
        existing = None
        if sleeve.content_hash is not None:
            existing = self._find(conn, "content_hash", sleeve.content_hash)
        if existing is None and sleeve.combined_instance_id > 0:
            # Same host element, different membership: update, don't duplicate
            existing = self._find(conn, "combined_instance_id", sleeve.combined_instance_id)

        if existing is not None:
            combined_id, created_at, instance_id = existing
            if sleeve.combined_instance_id <= 0 and (instance_id or 0) > 0:
                sleeve.combined_instance_id = int(instance_id)
            values = _combined_values(sleeve, created_at, now)
            conn.execute(
                f"UPDATE {COMBINED_SLEEVES} SET "
                + ", ".join(f"{c} = ?" for c in _UPDATE_COLUMNS)
                + " WHERE combined_id = ?",
                [values[c] for c in _UPDATE_COLUMNS] + [combined_id],
            )
            sleeve.created_at = created_at
            inserted = False
        else:
            values = _combined_values(sleeve, now, now)
            combined_id = int(conn.execute(
                f"INSERT INTO {COMBINED_SLEEVES} (combined_id, {', '.join(_INSERT_COLUMNS)}) "
                f"VALUES (nextval('seq_combined_sleeves'), {placeholders(len(_INSERT_COLUMNS))}) "
                f"RETURNING combined_id",
                [values[c] for c in _INSERT_COLUMNS],
            ).fetchone()[0])
            sleeve.created_at = now
            inserted = True

        sleeve.combined_id = combined_id
        sleeve.updated_at = now
        self._replace_constituents(conn, combined_id, sleeve.constituents)
        self._cascade(sleeve.constituents, sleeve.combined_instance_id)
        self._log("INSERT" if inserted else "UPDATE",
                  {'combined_id': combined_id, 'hash': sleeve.content_hash,
                   'constituents': len(sleeve.constituents)}, 1)
        return SaveResult(combined_id, sleeve.content_hash, inserted)

    def _cascade(self, constituents: Sequence[SleeveConstituent], instance_id: Optional[int]) -> int:
        """Flag every constituent combined-resolved; link when instance_id > 0."""
        updated = 0
        guids = [c.clash_zone_guid for c in constituents
                 if c.constituent_type == ConstituentType.INDIVIDUAL and c.clash_zone_guid]
        if guids:
            updated += self.clash_zones.mark_combined_resolved(guids, instance_id)
        for c in constituents:
            if c.constituent_type != ConstituentType.CLUSTER:
                continue
            if c.cluster_instance_id is None or c.cluster_instance_id <= 0:
                logger.debug("Cluster constituent in '%s' not placed yet; no zones to flag", c.category)
                continue
            updated += self.clash_zones.mark_cluster_members_combined(c.cluster_instance_id, instance_id)
            if instance_id is not None and instance_id > 0:
                self.clusters.set_combined_instance_id(c.cluster_instance_id, instance_id)
        return updated

    # -------------------------------------------------------------------------
    # Upsert
    # -------------------------------------------------------------------------

    def save_combined(self, sleeve: CombinedSleeve) -> SaveResult:
        """Upsert one combined sleeve, replace its constituents, cascade flags."""
        self._prepare(sleeve)
        with self._write("save") as conn:
            return self._upsert(conn, sleeve, time.time())

    def batch_save_combined(self, sleeves: List[CombinedSleeve]) -> List[SaveResult]:
        """Upsert many combined sleeves in one transaction; all or nothing."""
        for sleeve in sleeves:
            self._prepare(sleeve)
        if not sleeves:
            return []
        now = time.time()
        with self._write("batch_save") as conn:
            results = [self._upsert(conn, s, now) for s in sleeves]
        logger.info("Batch saved %d combined sleeve(s) (%d new)",
                    len(results), sum(r.inserted for r in results))
        return results

    def mark_constituents_resolved(self, constituents: Sequence[SleeveConstituent],
                                   owner_instance_id: int) -> int:
        """
        Flag and link constituents to a placed combined sleeve.

        Returns the number of ClashZones updated.
        """
        require_positive("owner_instance_id", owner_instance_id)
        unique = dedupe_preserving_order(
            constituents, key=lambda c: c.identity_key() or id(c)
        )
        with self._write("mark_constituents_resolved"):
            updated = self._cascade(unique, owner_instance_id)
        logger.info("Marked %d clash zone(s) combined-resolved under instance %d",
                    updated, owner_instance_id)
        return updated

    # -------------------------------------------------------------------------
    # Placement Updates and Deletes
    # -------------------------------------------------------------------------

    def update_combined_instance_id(self, combined_id: int, combined_instance_id: int) -> bool:
        """Record the placed host instance and link the constituents to it."""
        require_positive("combined_instance_id", combined_instance_id)
        with self._write("update_instance_id") as conn:
            rows = conn.execute(
                f"UPDATE {COMBINED_SLEEVES} SET combined_instance_id = ?, updated_at = ? "
                f"WHERE combined_id = ? RETURNING combined_id",
                [combined_instance_id, time.time(), combined_id],
            ).fetchall()
            if not rows:
                return False
            self._cascade(self._constituents_for(conn, [combined_id]).get(combined_id, []),
                          combined_instance_id)
        return True

    def update_combined_corners(self, combined_id: int, corners) -> bool:
        """Replace the four corners; the bounding box is refitted to them."""
        corners = as_corners(corners)
        bbox_min, bbox_max = bounding_box(corners)
        sets = list(CORNER_COLUMNS) + ["min_x", "min_y", "min_z", "max_x", "max_y", "max_z"]
        values = flatten_corners(corners) + list(bbox_min) + list(bbox_max)
        with self._write("update_corners") as conn:
            rows = conn.execute(
                f"UPDATE {COMBINED_SLEEVES} SET "
                + ", ".join(f"{c} = ?" for c in sets)
                + ", updated_at = ? WHERE combined_id = ? RETURNING combined_id",
                values + [time.time(), combined_id],
            ).fetchall()
        self._log("UPDATE", {'combined_id': combined_id}, len(rows), "corners")
        return bool(rows)

    def delete_combined(self, combined_id: int) -> bool:
        """Delete constituents, then the sleeve. Zone flags are left as they are."""
        with self._write("delete") as conn:
            conn.execute(f"DELETE FROM {COMBINED_CONSTITUENTS} WHERE combined_id = ?", [combined_id])
            rows = conn.execute(
                f"DELETE FROM {COMBINED_SLEEVES} WHERE combined_id = ? RETURNING combined_id",
                [combined_id],
            ).fetchall()
        self._log("DELETE", {'combined_id': combined_id}, len(rows))
        return bool(rows)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _constituents_for(self, conn, combined_ids: List[int]) -> Dict[int, List[SleeveConstituent]]:
        grouped: Dict[int, List[SleeveConstituent]] = defaultdict(list)
        if not combined_ids:
            return grouped
        rows = conn.execute(
            f"SELECT {', '.join(CONSTITUENT_COLUMNS)} FROM {COMBINED_CONSTITUENTS} "
            f"WHERE combined_id IN ({placeholders(len(combined_ids))}) ORDER BY constituent_id",
            combined_ids,
        ).fetchall()
        for row in rows:
            try:
                c = _row_to_constituent(row)
            except ValueError as e:
                logger.warning("Skipping malformed constituent row %s: %s", row[0], e)
                continue
            grouped[c.combined_id].append(c)
        return grouped

    def _select(self, where: str = "", params: Optional[List[Any]] = None) -> List[CombinedSleeve]:
        rows = self.conn.execute(
            f"SELECT {', '.join(COMBINED_COLUMNS)} FROM {COMBINED_SLEEVES} {where} ORDER BY combined_id",
            params or [],
        ).fetchall()
        sleeves = [_row_to_combined(r) for r in rows]
        grouped = self._constituents_for(self.conn, [s.combined_id for s in sleeves])
        for s in sleeves:
            s.constituents = grouped.get(s.combined_id, [])
        return sleeves

    def _first(self, operation: str, where: str, params: List[Any]) -> Optional[CombinedSleeve]:
        found = self._read(operation, [], self._select, where, params)
        return found[0] if found else None

    def get_combined(self, combined_id: int) -> Optional[CombinedSleeve]:
        return self._first("get", "WHERE combined_id = ?", [combined_id])

    def get_combined_by_hash(self, content_hash: str) -> Optional[CombinedSleeve]:
        return self._first("get_by_hash", "WHERE content_hash = ?", [content_hash])

    def get_combined_by_instance_id(self, combined_instance_id: int) -> Optional[CombinedSleeve]:
        return self._first("get_by_instance_id", "WHERE combined_instance_id = ?", [combined_instance_id])

    def get_combined_for_combo(self, combo_id: int, filter_id: Optional[int] = None) -> List[CombinedSleeve]:
        if filter_id is None:
            return self._read("list_for_combo", [], self._select, "WHERE combo_id = ?", [combo_id])
        return self._read("list_for_combo", [], self._select,
                          "WHERE combo_id = ? AND filter_id = ?", [combo_id, filter_id])

    def get_all_combined(self) -> List[CombinedSleeve]:
        return self._read("list", [], self._select)

    def get_constituents(self, combined_id: int) -> List[SleeveConstituent]:
        grouped = self._read("get_constituents", {}, self._constituents_for, self.conn, [combined_id])
        return list(grouped.get(combined_id, []))
