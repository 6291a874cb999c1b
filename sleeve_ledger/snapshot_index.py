"""
Snapshot Index
==============

Read-only lookup built once per session from persisted snapshots.

    by_sleeve            sleeve instance id    → SleeveSnapshotView
    by_cluster           cluster instance id   → SleeveSnapshotView
    by_clash_zone_guid   ClashZone GUID        → SleeveSnapshotView
    by_combined          combined instance id  → [ConstituentSnapshotRef]
    sleeve_id_to_guid    sleeve instance id    → ClashZone GUID (from clash_zones)

A snapshot's sleeve id goes stale when the host re-places a sleeve; the
ClashZone row still has the current id, so find_for_sleeve() falls back
through sleeve_id_to_guid → by_clash_zone_guid.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .constants import CONSTITUENT_CLUSTER, CONSTITUENT_INDIVIDUAL
from .identity import normalize_guid
from .models import ConstituentSnapshotRef, SleeveSnapshotView


@dataclass
class SnapshotIndex:
    by_sleeve: Dict[int, SleeveSnapshotView] = field(default_factory=dict)
    by_cluster: Dict[int, SleeveSnapshotView] = field(default_factory=dict)
    by_clash_zone_guid: Dict[str, SleeveSnapshotView] = field(default_factory=dict)
    by_combined: Dict[int, List[ConstituentSnapshotRef]] = field(default_factory=dict)
    sleeve_id_to_guid: Dict[int, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.by_sleeve and not self.by_cluster

    def add(self, view: SleeveSnapshotView) -> None:
        """Index one snapshot; later snapshots replace earlier ones per key."""
        if view.sleeve_instance_id is not None and view.sleeve_instance_id > 0:
            self.by_sleeve[view.sleeve_instance_id] = view
        if view.cluster_instance_id is not None and view.cluster_instance_id > 0:
            self.by_cluster[view.cluster_instance_id] = view
        if view.clash_zone_guid:
            self.by_clash_zone_guid[normalize_guid(view.clash_zone_guid)] = view

    def get_by_sleeve(self, sleeve_instance_id: int) -> Optional[SleeveSnapshotView]:
        return self.by_sleeve.get(sleeve_instance_id)

    def get_by_cluster(self, cluster_instance_id: int) -> Optional[SleeveSnapshotView]:
        return self.by_cluster.get(cluster_instance_id)

    def get_by_clash_zone_guid(self, guid: str) -> Optional[SleeveSnapshotView]:
        return self.by_clash_zone_guid.get(normalize_guid(guid))

    def get_by_combined(self, combined_instance_id: int) -> List[ConstituentSnapshotRef]:
        return list(self.by_combined.get(combined_instance_id, []))

    def find_for_sleeve(self, sleeve_instance_id: int) -> Optional[SleeveSnapshotView]:
        """By sleeve id, else via the ClashZone GUID recorded for that id."""
        view = self.by_sleeve.get(sleeve_instance_id)
        if view is not None:
            return view
        guid = self.sleeve_id_to_guid.get(sleeve_instance_id)
        if guid is None:
            return None
        return self.by_clash_zone_guid.get(normalize_guid(guid))

    def resolve_ref(self, ref: ConstituentSnapshotRef) -> Optional[SleeveSnapshotView]:
        if ref.source_type == CONSTITUENT_INDIVIDUAL and ref.clash_zone_guid:
            return self.get_by_clash_zone_guid(ref.clash_zone_guid)
        if ref.source_type == CONSTITUENT_CLUSTER and ref.cluster_instance_id:
            return self.by_cluster.get(ref.cluster_instance_id)
        return None

    def collect_combined_views(self, combined_instance_id: int) -> List[SleeveSnapshotView]:
        """Snapshots feeding a combined sleeve; constituents without one are skipped."""
        views = []
        for ref in self.by_combined.get(combined_instance_id, []):
            view = self.resolve_ref(ref)
            if view is not None:
                views.append(view)
        return views

    def stats(self) -> Dict[str, int]:
        return {
            'sleeves': len(self.by_sleeve),
            'clusters': len(self.by_cluster),
            'guids': len(self.by_clash_zone_guid),
            'combined': len(self.by_combined),
            'sleeve_guid_links': len(self.sleeve_id_to_guid),
        }
