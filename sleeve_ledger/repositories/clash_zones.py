"""
ClashZone Store
===============

Individual intersections and their resolution flags.

Flag updates only ever SET a tier:

    mark_resolved            is_resolved = TRUE,          sleeve_instance_id
    mark_cluster_resolved    is_cluster_resolved = TRUE,  cluster_instance_id
    mark_combined_resolved   is_combined_resolved = TRUE, combined_instance_id

force_redetection_reset() is the one operation that clears them, and it
leaves the GUID alone.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, Optional
import logging
import time

from ..constants import (
    CLASH_ZONES,
    CLUSTER_SLEEVES,
    COMBINED_CATEGORY,
    CONSTITUENT_CLUSTER,
    CONSTITUENT_INDIVIDUAL,
    SLEEVE_SNAPSHOTS,
    UNASSIGNED_ID,
)
from ..errors import ClashZoneOperationError
from ..identity import dedupe_preserving_order, normalize_guid
from ..models import ClashZone, MarkableClashZone, MarkableSleeve, flatten_corners, unflatten_corners
from ..schema import CLASH_ZONE_COLUMNS, CORNER_COLUMNS, placeholders, row_to_dict
from ..serialization import safe_json_dict
from .base import Repository, require_positive, require_text

logger = logging.getLogger(__name__)


_GEOMETRY_COLUMNS = (
    "mep_category", "mep_element_id", "host_element_id", "level_name", "ix", "iy", "iz",
    *CORNER_COLUMNS, "width", "height", "diameter", "rotation_deg",
)


def _zone_values(zone: ClashZone, now: float) -> List[Any]:
    values = {
        'guid': zone.guid,
        'mep_category': zone.mep_category,
        'mep_element_id': zone.mep_element_id,
        'host_element_id': zone.host_element_id,
        'level_name': zone.level_name or "",
        'ix': zone.intersection[0],
        'iy': zone.intersection[1],
        'iz': zone.intersection[2],
        'is_resolved': zone.is_resolved,
        'is_cluster_resolved': zone.is_cluster_resolved,
        'is_combined_resolved': zone.is_combined_resolved,
        'is_current_clash': zone.is_current_clash,
        'sleeve_instance_id': zone.sleeve_instance_id,
        'cluster_instance_id': zone.cluster_instance_id,
        'combined_instance_id': zone.combined_instance_id,
        'width': zone.width,
        'height': zone.height,
        'diameter': zone.diameter,
        'rotation_deg': zone.rotation_deg,
        'created_at': now,
        'updated_at': now,
    }
    values.update(zip(CORNER_COLUMNS, flatten_corners(zone.corners)))
    return [values[c] for c in CLASH_ZONE_COLUMNS]


def _row_to_zone(row) -> ClashZone:
    v = row_to_dict(CLASH_ZONE_COLUMNS, row)
    return ClashZone(
        guid=v['guid'],
        mep_category=v['mep_category'],
        mep_element_id=v['mep_element_id'] or 0,
        host_element_id=v['host_element_id'] or 0,
        level_name=v['level_name'] or "",
        intersection=(v['ix'] or 0.0, v['iy'] or 0.0, v['iz'] or 0.0),
        is_resolved=bool(v['is_resolved']),
        is_cluster_resolved=bool(v['is_cluster_resolved']),
        is_combined_resolved=bool(v['is_combined_resolved']),
        is_current_clash=bool(v['is_current_clash']),
        sleeve_instance_id=v['sleeve_instance_id'] if v['sleeve_instance_id'] is not None else UNASSIGNED_ID,
        cluster_instance_id=v['cluster_instance_id'] if v['cluster_instance_id'] is not None else UNASSIGNED_ID,
        combined_instance_id=v['combined_instance_id'] if v['combined_instance_id'] is not None else UNASSIGNED_ID,
        corners=unflatten_corners([v[c] for c in CORNER_COLUMNS]),
        width=v['width'] or 0.0,
        height=v['height'] or 0.0,
        diameter=v['diameter'] or 0.0,
        rotation_deg=v['rotation_deg'] or 0.0,
    )


def _clean_guids(guids: Iterable) -> List[str]:
    return dedupe_preserving_order(normalize_guid(g) for g in guids if g)


class ClashZoneRepository(Repository):
    """Reads and flag updates for clash_zones."""

    table = CLASH_ZONES
    error_class = ClashZoneOperationError

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def save_clash_zones(self, zones: List[ClashZone]) -> int:
        """
        Upsert zones by GUID.

        New zones are inserted whole. For existing zones only category and
        geometry are refreshed; resolution flags and instance links are left
        as stored. Returns the number of rows inserted.
        """
        for zone in zones:
            require_text("guid", zone.guid)
            require_text("mep_category", zone.mep_category)
        unique = dedupe_preserving_order(zones, key=lambda z: z.guid)
        if not unique:
            return 0

        now = time.time()
        inserted = 0
        insert_sql = (f"INSERT INTO {CLASH_ZONES} ({', '.join(CLASH_ZONE_COLUMNS)}) "
                      f"VALUES ({placeholders(len(CLASH_ZONE_COLUMNS))})")
        update_sql = (f"UPDATE {CLASH_ZONES} SET "
                      + ", ".join(f"{c} = ?" for c in _GEOMETRY_COLUMNS)
                      + ", updated_at = ? WHERE guid = ?")

        with self._write("save") as conn:
            existing = self._existing_guids(conn, [z.guid for z in unique])
            for zone in unique:
                if zone.guid in existing:
                    values = dict(zip(CLASH_ZONE_COLUMNS, _zone_values(zone, now)))
                    conn.execute(update_sql, [values[c] for c in _GEOMETRY_COLUMNS] + [now, zone.guid])
                else:
                    conn.execute(insert_sql, _zone_values(zone, now))
                    inserted += 1
        self._log("UPSERT", {'zones': len(unique)}, len(unique), f"{inserted} new")
        return inserted

    def _existing_guids(self, conn, guids: List[str]) -> set:
        if not guids:
            return set()
        rows = conn.execute(
            f"SELECT guid FROM {CLASH_ZONES} WHERE guid IN ({placeholders(len(guids))})", guids
        ).fetchall()
        return {r[0] for r in rows}

    def _set_tier(self, operation: str, flag_column: str, link_column: str,
                  where: str, params: List[Any], instance_id: Optional[int]) -> int:
        sets = [f"{flag_column} = TRUE", "updated_at = ?"]
        values: List[Any] = [time.time()]
        if instance_id is not None and instance_id > 0:
            sets.append(f"{link_column} = ?")
            values.append(instance_id)
        with self._write(operation) as conn:
            rows = conn.execute(
                f"UPDATE {CLASH_ZONES} SET {', '.join(sets)} WHERE {where} RETURNING guid",
                values + params,
            ).fetchall()
        self._log("UPDATE", {'flag': flag_column, 'link': instance_id}, len(rows), operation)
        return len(rows)

    def _set_tier_for_guids(self, operation: str, flag_column: str, link_column: str,
                            guids: Iterable, instance_id: Optional[int]) -> int:
        clean = _clean_guids(guids)
        if not clean:
            return 0
        return self._set_tier(operation, flag_column, link_column,
                              f"guid IN ({placeholders(len(clean))})", clean, instance_id)

    def mark_resolved(self, guids: Iterable, sleeve_instance_id: Optional[int] = None) -> int:
        """Individual tier. Returns number of zones updated."""
        return self._set_tier_for_guids("mark_resolved", "is_resolved", "sleeve_instance_id",
                                        guids, sleeve_instance_id)

    def mark_cluster_resolved(self, guids: Iterable, cluster_instance_id: Optional[int] = None) -> int:
        """Cluster tier; lower tier flags are kept."""
        return self._set_tier_for_guids("mark_cluster_resolved", "is_cluster_resolved",
                                        "cluster_instance_id", guids, cluster_instance_id)

    def mark_combined_resolved(self, guids: Iterable, combined_instance_id: Optional[int] = None) -> int:
        """Combined tier; lower tier flags are kept."""
        return self._set_tier_for_guids("mark_combined_resolved", "is_combined_resolved",
                                        "combined_instance_id", guids, combined_instance_id)

    def mark_cluster_members_combined(self, cluster_instance_id: int,
                                      combined_instance_id: Optional[int] = None) -> int:
        """Combined tier for every zone linked to a placed cluster."""
        require_positive("cluster_instance_id", cluster_instance_id)
        return self._set_tier("mark_cluster_members_combined", "is_combined_resolved",
                              "combined_instance_id", "cluster_instance_id = ?",
                              [cluster_instance_id], combined_instance_id)

    def set_current_clash(self, guids: Iterable) -> int:
        clean = _clean_guids(guids)
        if not clean:
            return 0
        with self._write("set_current_clash") as conn:
            rows = conn.execute(
                f"UPDATE {CLASH_ZONES} SET is_current_clash = TRUE, updated_at = ? "
                f"WHERE guid IN ({placeholders(len(clean))}) RETURNING guid",
                [time.time()] + clean,
            ).fetchall()
        return len(rows)

    def reset_current_clash_flags(self, category: Optional[str] = None) -> int:
        """Clear is_current_clash before a detection pass re-flags what it finds."""
        where, params = self._category_filter(category)
        with self._write("reset_current_clash") as conn:
            rows = conn.execute(
                f"UPDATE {CLASH_ZONES} SET is_current_clash = FALSE, updated_at = ? {where} RETURNING guid",
                [time.time()] + params,
            ).fetchall()
        self._log("UPDATE", {'category': category}, len(rows), "reset is_current_clash")
        return len(rows)

    def force_redetection_reset(self, category: Optional[str] = None) -> int:
        """
        Return zones to Unresolved: clear every tier flag and set all instance
        links back to -1. GUIDs and geometry are kept.
        """
        where, params = self._category_filter(category)
        with self._write("force_redetection_reset") as conn:
            rows = conn.execute(
                f"""
                UPDATE {CLASH_ZONES} SET
                    is_resolved = FALSE,
                    is_cluster_resolved = FALSE,
                    is_combined_resolved = FALSE,
                    sleeve_instance_id = ?,
                    cluster_instance_id = ?,
                    combined_instance_id = ?,
                    updated_at = ?
                {where}
                RETURNING guid
                """,
                [UNASSIGNED_ID, UNASSIGNED_ID, UNASSIGNED_ID, time.time()] + params,
            ).fetchall()
        logger.info("Force re-detection reset %d clash zone(s)%s", len(rows),
                    f" in '{category}'" if category else "")
        return len(rows)

    def delete_clash_zones(self, category: Optional[str] = None) -> int:
        """Explicit refresh: drop zones so detection can repopulate them."""
        where, params = self._category_filter(category)
        with self._write("delete") as conn:
            rows = conn.execute(f"DELETE FROM {CLASH_ZONES} {where} RETURNING guid", params).fetchall()
        self._log("DELETE", {'category': category}, len(rows))
        return len(rows)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _category_filter(category: Optional[str]):
        if category:
            return "WHERE mep_category = ?", [category]
        return "", []

    def _select(self, where: str = "", params: Optional[List[Any]] = None) -> List[ClashZone]:
        rows = self.conn.execute(
            f"SELECT {', '.join(CLASH_ZONE_COLUMNS)} FROM {CLASH_ZONES} {where} ORDER BY guid",
            params or [],
        ).fetchall()
        return [_row_to_zone(r) for r in rows]

    def get_clash_zone(self, guid: str) -> Optional[ClashZone]:
        found = self._read("get", [], self._select, "WHERE guid = ?", [normalize_guid(guid)])
        return found[0] if found else None

    def get_by_sleeve_instance_id(self, sleeve_instance_id: int) -> Optional[ClashZone]:
        found = self._read("get_by_sleeve_instance_id", [], self._select,
                           "WHERE sleeve_instance_id = ?", [sleeve_instance_id])
        return found[0] if found else None

    def get_by_cluster_instance_id(self, cluster_instance_id: int) -> List[ClashZone]:
        return self._read("get_by_cluster_instance_id", [], self._select,
                          "WHERE cluster_instance_id = ?", [cluster_instance_id])

    def get_clash_zones(self, category: Optional[str] = None) -> List[ClashZone]:
        where, params = self._category_filter(category)
        return self._read("list", [], self._select, where, params)

    def flag_statistics(self, category: Optional[str] = None) -> Dict[str, int]:
        """Counts of zones per flag."""
        where, params = self._category_filter(category)

        def query():
            row = self.conn.execute(f"""
                SELECT
                    COUNT(*),
                    COUNT(*) FILTER (WHERE is_resolved),
                    COUNT(*) FILTER (WHERE is_cluster_resolved),
                    COUNT(*) FILTER (WHERE is_combined_resolved),
                    COUNT(*) FILTER (WHERE is_current_clash),
                    COUNT(*) FILTER (WHERE NOT is_resolved AND NOT is_cluster_resolved
                                     AND NOT is_combined_resolved)
                FROM {CLASH_ZONES} {where}
            """, params).fetchone()
            keys = ('total', 'resolved', 'cluster_resolved', 'combined_resolved',
                    'current', 'unresolved')
            return {k: int(v or 0) for k, v in zip(keys, row)}

        empty = {k: 0 for k in ('total', 'resolved', 'cluster_resolved',
                                'combined_resolved', 'current', 'unresolved')}
        return self._read("flag_statistics", empty, query)

    def get_markable_individuals(self, category: Optional[str] = None) -> List[MarkableSleeve]:
        """
        Placed individual sleeves with their snapshot parameters.

        A sleeve without a snapshot is still returned, with empty parameters.
        """
        params: List[Any] = []
        where = "WHERE z.is_resolved AND z.sleeve_instance_id > 0"
        if category:
            where += " AND z.mep_category = ?"
            params.append(category)

        def query():
            rows = self.conn.execute(f"""
                SELECT z.sleeve_instance_id, z.mep_category, z.guid,
                       s.mep_parameters_json, s.host_parameters_json
                FROM {CLASH_ZONES} z
                LEFT JOIN {SLEEVE_SNAPSHOTS} s ON s.sleeve_instance_id = z.sleeve_instance_id
                {where}
                ORDER BY z.sleeve_instance_id
            """, params).fetchall()
            return [
                MarkableSleeve(
                    source_type=CONSTITUENT_INDIVIDUAL,
                    instance_id=int(r[0]),
                    category=r[1],
                    identity=r[2],
                    mep_parameters=safe_json_dict(r[3], "snapshot.mep_parameters_json"),
                    host_parameters=safe_json_dict(r[4], "snapshot.host_parameters_json"),
                )
                for r in rows
            ]

        return self._read("get_markable_individuals", [], query)

    # -------------------------------------------------------------------------
    # Marking Queries (every tier)
    # -------------------------------------------------------------------------

    # Cluster category per placed instance; a zone may carry no category of
    # its own when it was only ever seen as a cluster member
    _CLUSTER_CATEGORY_JOIN = f"""
        LEFT JOIN (
            SELECT cluster_instance_id, MIN(category) AS category
            FROM {CLUSTER_SLEEVES}
            WHERE cluster_instance_id > 0
            GROUP BY cluster_instance_id
        ) c ON c.cluster_instance_id = z.cluster_instance_id
    """

    def _markable(self, where: str, params: List[Any]) -> List[MarkableClashZone]:
        rows = self.conn.execute(f"""
            SELECT z.guid,
                   COALESCE(NULLIF(z.mep_category, ''), c.category),
                   z.level_name,
                   z.sleeve_instance_id, z.cluster_instance_id, z.combined_instance_id,
                   z.ix, z.iy, z.iz,
                   COALESCE(sc.mep_parameters_json, si.mep_parameters_json),
                   COALESCE(sc.host_parameters_json, si.host_parameters_json)
            FROM {CLASH_ZONES} z
            {self._CLUSTER_CATEGORY_JOIN}
            LEFT JOIN {SLEEVE_SNAPSHOTS} sc
                ON z.cluster_instance_id > 0
                AND sc.source_type = '{CONSTITUENT_CLUSTER}'
                AND sc.cluster_instance_id = z.cluster_instance_id
            LEFT JOIN {SLEEVE_SNAPSHOTS} si
                ON z.sleeve_instance_id > 0
                AND si.source_type = '{CONSTITUENT_INDIVIDUAL}'
                AND si.sleeve_instance_id = z.sleeve_instance_id
            WHERE (z.sleeve_instance_id > 0 OR z.cluster_instance_id > 0
                   OR z.combined_instance_id > 0)
            {where}
            ORDER BY z.guid
        """, params).fetchall()
        return [
            MarkableClashZone(
                guid=r[0],
                category=r[1] or "",
                level_name=r[2] or "",
                sleeve_instance_id=_link(r[3]),
                cluster_instance_id=_link(r[4]),
                combined_instance_id=_link(r[5]),
                intersection=(r[6] or 0.0, r[7] or 0.0, r[8] or 0.0),
                mep_parameters=safe_json_dict(r[9], "snapshot.mep_parameters_json"),
                host_parameters=safe_json_dict(r[10], "snapshot.host_parameters_json"),
            )
            for r in rows
        ]

    def get_markable_clash_zones(self, category: str) -> List[MarkableClashZone]:
        """
        Zones of a category covered by a placed sleeve of any tier: their own
        individual sleeve, a cluster or a combined sleeve.

        A zone matches on its own category or on its cluster's category.
        """
        return self._read("get_markable_clash_zones", [], self._markable,
                          "AND (z.mep_category = ? OR c.category = ?)", [category, category])

    def get_sleeves_for_level(self, level_name: str,
                              category: Optional[str] = None) -> List[MarkableClashZone]:
        """
        Placed zones on one level.

        category "Combined" (any case) selects zones covered by a combined
        sleeve. Any other category, or none, excludes them: those zones are
        marked through their combined sleeve instead.
        """
        where = "AND z.level_name = ?"
        params: List[Any] = [level_name]
        if category and category.lower() == COMBINED_CATEGORY.lower():
            where += " AND z.combined_instance_id > 0"
        else:
            if category:
                where += " AND (z.mep_category = ? OR c.category = ?)"
                params += [category, category]
            where += " AND COALESCE(z.combined_instance_id, -1) <= 0"
        return self._read("get_sleeves_for_level", [], self._markable, where, params)

    def get_category_lookup(self, instance_ids: Iterable[int]) -> Dict[int, str]:
        """
        Category per placed host instance id, for individual sleeves and
        clusters. Ids the ledger doesn't know are absent from the result.
        """
        ids = dedupe_preserving_order(int(i) for i in instance_ids if i is not None and int(i) > 0)
        if not ids:
            return {}
        marks = placeholders(len(ids))

        def query():
            lookup: Dict[int, str] = {}
            rows = self.conn.execute(f"""
                SELECT z.sleeve_instance_id, z.cluster_instance_id,
                       COALESCE(NULLIF(z.mep_category, ''), c.category)
                FROM {CLASH_ZONES} z
                {self._CLUSTER_CATEGORY_JOIN}
                WHERE z.sleeve_instance_id IN ({marks}) OR z.cluster_instance_id IN ({marks})
            """, ids + ids).fetchall()
            wanted = set(ids)
            for sleeve_id, cluster_id, category in rows:
                if not category:
                    continue
                if sleeve_id in wanted:
                    lookup[int(sleeve_id)] = category
                if cluster_id in wanted:
                    lookup.setdefault(int(cluster_id), category)
            # Clusters whose members were never saved as zones
            for cluster_id, category in self.conn.execute(
                f"SELECT cluster_instance_id, category FROM {CLUSTER_SLEEVES} "
                f"WHERE cluster_instance_id IN ({marks}) ORDER BY cluster_id", ids
            ).fetchall():
                lookup.setdefault(int(cluster_id), category)
            return lookup

        return self._read("get_category_lookup", {}, query)


def _link(value) -> int:
    return UNASSIGNED_ID if value is None else int(value)
