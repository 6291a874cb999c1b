"""
Versioned Table Readers
=======================

A table written by an older release may lack columns the current code
selects. Each known column layout is one `TableLayout`; a `VersionedReader`
tries them newest-first and settles on the first one DuckDB can bind:

    VersionedReader.read(filters)
        │
        ├── CurrentClusterLayout   SELECT ..., content_guid, constituent_guids_json
        │       └── BinderException "column not found" → next layout
        │
        └── LegacyClusterLayout    SELECT ..., clash_zone_ids_json
                └── content_guid recomputed from the decoded members

Filters on a column a layout lacks are applied after decoding, against the
model attribute of the same name.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar
import logging

import duckdb
import numpy as np

from .constants import CLUSTER_SLEEVES, UNASSIGNED_ID
from .errors import SchemaLayoutError
from .identity import compute_cluster_identity, normalize_guid
from .models import ClusterSleeve, as_point, unflatten_corners
from .schema import CLUSTER_COLUMNS, CORNER_COLUMNS, is_missing_column_error, row_to_dict
from .serialization import safe_str_list

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Layout Interface
# =============================================================================

class TableLayout(ABC, Generic[T]):
    """One known column layout of a table."""

    name: str = ""
    table: str = ""
    columns: Tuple[str, ...] = ()
    order_by: str = ""

    def filter_column(self, field: str) -> Optional[str]:
        """Column backing a model field, or None if this layout lacks it."""
        return field if field in self.columns else None

    def build_query(self, filters: Dict[str, Any]) -> Tuple[str, List[Any], Dict[str, Any]]:
        """Returns (sql, params, residual filters to apply in Python)."""
        clauses, params, residual = [], [], {}
        for field, value in filters.items():
            if value is None:
                continue
            column = self.filter_column(field)
            if column is None:
                residual[field] = value
                continue
            clauses.append(f"{column} = ?")
            params.append(value)
        sql = f"SELECT {', '.join(self.columns)} FROM {self.table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        if self.order_by:
            sql += f" ORDER BY {self.order_by}"
        return sql, params, residual

    @abstractmethod
    def decode(self, values: Dict[str, Any]) -> T:
        pass


class VersionedReader(Generic[T]):
    """
    Reads a table through the first layout that binds.

    The working layout is remembered, so the fallback costs one failed
    statement per reader rather than one per query.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, layouts: Sequence[TableLayout[T]]):
        if not layouts:
            raise ValueError("VersionedReader needs at least one layout")
        self.conn = conn
        self.layouts = list(layouts)
        self._active: Optional[TableLayout[T]] = None

    @property
    def active_layout(self) -> Optional[TableLayout[T]]:
        return self._active

    def reset(self) -> None:
        """Forget the chosen layout (call after a migration)."""
        self._active = None

    def _candidates(self) -> List[TableLayout[T]]:
        if self._active is not None:
            return [self._active]
        return self.layouts

    def read(self, **filters) -> List[T]:
        tried = []
        for layout in self._candidates():
            sql, params, residual = layout.build_query(filters)
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except duckdb.BinderException as e:
                if not is_missing_column_error(e):
                    raise
                logger.info("%s: layout '%s' does not match (%s), trying older layout",
                            layout.table, layout.name, e)
                tried.append(layout.name)
                continue
            if self._active is not layout:
                self._active = layout
                logger.debug("%s: reading with layout '%s'", layout.table, layout.name)
            return self._decode_rows(layout, rows, residual)
        raise SchemaLayoutError(
            f"No known layout can read {self.layouts[0].table} (tried: {', '.join(tried)})"
        )

    def _decode_rows(self, layout: TableLayout[T], rows, residual: Dict[str, Any]) -> List[T]:
        out = []
        for row in rows:
            values = row_to_dict(layout.columns, row)
            try:
                item = layout.decode(values)
            except (TypeError, ValueError, KeyError) as e:
                logger.warning("%s: skipping undecodable row %r: %s",
                               layout.table, row[0] if row else None, e)
                continue
            if all(getattr(item, field, None) == value for field, value in residual.items()):
                out.append(item)
        return out


# =============================================================================
# Cluster Sleeve Layouts
# =============================================================================

def _instance_id(value) -> int:
    return UNASSIGNED_ID if value is None else int(value)


def _geometry_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'bbox_min': (values['min_x'], values['min_y'], values['min_z']),
        'bbox_max': (values['max_x'], values['max_y'], values['max_z']),
        'width': values['width'] or 0.0,
        'height': values['height'] or 0.0,
        'depth': values['depth'] or 0.0,
        'rotation_deg': values['rotation_deg'] or 0.0,
        'corners': unflatten_corners([values[c] for c in CORNER_COLUMNS]),
    }


class CurrentClusterLayout(TableLayout[ClusterSleeve]):
    name = "current"
    table = CLUSTER_SLEEVES
    columns = CLUSTER_COLUMNS
    order_by = "cluster_id"

    def decode(self, values: Dict[str, Any]) -> ClusterSleeve:
        guids = safe_str_list(values['constituent_guids_json'],
                              f"{self.table}.constituent_guids_json")
        return ClusterSleeve(
            combo_id=values['combo_id'],
            filter_id=values['filter_id'],
            category=values['category'],
            constituent_guids=guids,
            cluster_id=values['cluster_id'],
            cluster_instance_id=_instance_id(values['cluster_instance_id']),
            content_guid=values['content_guid'],
            combined_instance_id=_instance_id(values['combined_instance_id']),
            is_rotated=bool(values['is_rotated']),
            placement=(values['px'], values['py'], values['pz']),
            host_type=values['host_type'] or "",
            host_orientation=values['host_orientation'] or "",
            created_at=values['created_at'],
            updated_at=values['updated_at'],
            **_geometry_fields(values),
        )


LEGACY_CLUSTER_COLUMNS = tuple(
    c for c in CLUSTER_COLUMNS
    if c not in ("combined_instance_id", "content_guid", "constituent_guids_json",
                 "is_rotated", "px", "py", "pz", "host_type", "host_orientation")
) + ("clash_zone_ids_json",)


class LegacyClusterLayout(TableLayout[ClusterSleeve]):
    """
    First-release layout: members in clash_zone_ids_json, no content GUID,
    no explicit placement point (bbox centre is used).
    """
    name = "legacy"
    table = CLUSTER_SLEEVES
    columns = LEGACY_CLUSTER_COLUMNS
    order_by = "cluster_id"

    def decode(self, values: Dict[str, Any]) -> ClusterSleeve:
        guids = [normalize_guid(g) for g in
                 safe_str_list(values['clash_zone_ids_json'], f"{self.table}.clash_zone_ids_json")]
        geometry = _geometry_fields(values)
        centre = (np.asarray(geometry['bbox_min']) + np.asarray(geometry['bbox_max'])) / 2.0
        return ClusterSleeve(
            combo_id=values['combo_id'],
            filter_id=values['filter_id'],
            category=values['category'],
            constituent_guids=guids,
            cluster_id=values['cluster_id'],
            cluster_instance_id=_instance_id(values['cluster_instance_id']),
            content_guid=compute_cluster_identity(guids),
            is_rotated=abs(geometry['rotation_deg']) > 1e-9,
            placement=as_point(centre),
            created_at=values['created_at'],
            updated_at=values['updated_at'],
            **geometry,
        )


def cluster_reader(conn: duckdb.DuckDBPyConnection) -> VersionedReader[ClusterSleeve]:
    return VersionedReader(conn, [CurrentClusterLayout(), LegacyClusterLayout()])
