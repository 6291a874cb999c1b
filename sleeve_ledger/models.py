"""
Resolution Records
==================

In-memory forms of everything the ledger persists.

    ClashZone ───────────────┐          (one MEP × host intersection)
        │ cluster member     │ individual member
        ▼                    ▼
    ClusterSleeve ──► SleeveConstituent ◄── CombinedSleeve
        (one category)    (type tag)        (several categories)

Resolution tiers on a ClashZone are additive flags:

    Unresolved → IndividuallyResolved → ClusterResolved → CombinedResolved

A higher tier never clears a lower one; only an explicit force re-detection
reset returns a zone to Unresolved.

Geometry here is bookkeeping for placement, supplied by the caller. Nothing
in the ledger recomputes it.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .constants import UNASSIGNED_ID, CONSTITUENT_INDIVIDUAL, CONSTITUENT_CLUSTER
from .identity import (
    clash_zone_guid,
    compute_cluster_identity,
    compute_combined_identity,
    constituent_key,
    dedupe_preserving_order,
    normalize_guid,
)


Point3 = Tuple[float, float, float]
Corners = List[Point3]

ORIGIN: Point3 = (0.0, 0.0, 0.0)


def _zero_corners() -> Corners:
    return [ORIGIN, ORIGIN, ORIGIN, ORIGIN]


# =============================================================================
# SECTION 1: Geometry Helpers
# =============================================================================

def as_point(value: Optional[Sequence[float]]) -> Point3:
    if value is None:
        return ORIGIN
    x, y, z = (float(v) for v in value)
    return (x, y, z)


def as_corners(value: Optional[Sequence[Sequence[float]]]) -> Corners:
    if not value:
        return _zero_corners()
    corners = [as_point(c) for c in value]
    if len(corners) != 4:
        raise ValueError(f"Expected 4 corners, got {len(corners)}")
    return corners


def flatten_corners(corners: Corners) -> List[float]:
    """4 corners → 12 floats (x1, y1, z1, ..., x4, y4, z4) in column order."""
    return [float(v) for v in np.asarray(corners, dtype=np.float64).reshape(12)]


def unflatten_corners(values: Sequence[Optional[float]]) -> Corners:
    arr = np.asarray([0.0 if v is None else v for v in values], dtype=np.float64).reshape(4, 3)
    return [as_point(row) for row in arr]


def bounding_box(corners: Corners) -> Tuple[Point3, Point3]:
    """Axis-aligned (min, max) over the corners."""
    arr = np.asarray(corners, dtype=np.float64)
    return as_point(arr.min(axis=0)), as_point(arr.max(axis=0))


# =============================================================================
# SECTION 2: ClashZone (Individual)
# =============================================================================

class ResolutionTier(str, Enum):
    """Highest tier a ClashZone has reached."""
    UNRESOLVED = "Unresolved"
    INDIVIDUAL = "IndividuallyResolved"
    CLUSTER = "ClusterResolved"
    COMBINED = "CombinedResolved"


@dataclass
class ClashZone:
    """
    One intersection between a single MEP element and a single host element.

    `guid` is immutable once detected; flags and instance links are the only
    fields the ledger mutates afterwards.
    """
    guid: str
    mep_category: str
    mep_element_id: int = 0
    host_element_id: int = 0
    level_name: str = ""
    intersection: Point3 = ORIGIN

    is_resolved: bool = False
    is_cluster_resolved: bool = False
    is_combined_resolved: bool = False
    is_current_clash: bool = True

    sleeve_instance_id: int = UNASSIGNED_ID
    cluster_instance_id: int = UNASSIGNED_ID
    combined_instance_id: int = UNASSIGNED_ID

    corners: Corners = field(default_factory=_zero_corners)
    width: float = 0.0
    height: float = 0.0
    diameter: float = 0.0
    rotation_deg: float = 0.0

    def __post_init__(self):
        if self.guid:
            self.guid = normalize_guid(self.guid)
        self.intersection = as_point(self.intersection)
        self.corners = as_corners(self.corners)

    @classmethod
    def detect(cls, mep_element_id: int, host_element_id: int,
               point: Sequence[float], mep_category: str, **kwargs) -> 'ClashZone':
        """Build a zone whose GUID is derived from the elements and the point."""
        return cls(
            guid=clash_zone_guid(mep_element_id, host_element_id, point),
            mep_category=mep_category,
            mep_element_id=mep_element_id,
            host_element_id=host_element_id,
            intersection=as_point(point),
            **kwargs,
        )

    @property
    def resolution_tier(self) -> ResolutionTier:
        if self.is_combined_resolved:
            return ResolutionTier.COMBINED
        if self.is_cluster_resolved:
            return ResolutionTier.CLUSTER
        if self.is_resolved:
            return ResolutionTier.INDIVIDUAL
        return ResolutionTier.UNRESOLVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'guid': self.guid,
            'mep_category': self.mep_category,
            'mep_element_id': self.mep_element_id,
            'host_element_id': self.host_element_id,
            'level_name': self.level_name,
            'intersection': list(self.intersection),
            'is_resolved': self.is_resolved,
            'is_cluster_resolved': self.is_cluster_resolved,
            'is_combined_resolved': self.is_combined_resolved,
            'is_current_clash': self.is_current_clash,
            'sleeve_instance_id': self.sleeve_instance_id,
            'cluster_instance_id': self.cluster_instance_id,
            'combined_instance_id': self.combined_instance_id,
            'corners': [list(c) for c in self.corners],
            'width': self.width,
            'height': self.height,
            'diameter': self.diameter,
            'rotation_deg': self.rotation_deg,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ClashZone':
        return cls(
            guid=d['guid'],
            mep_category=d['mep_category'],
            mep_element_id=d.get('mep_element_id', 0),
            host_element_id=d.get('host_element_id', 0),
            level_name=d.get('level_name', ""),
            intersection=d.get('intersection', ORIGIN),
            is_resolved=d.get('is_resolved', False),
            is_cluster_resolved=d.get('is_cluster_resolved', False),
            is_combined_resolved=d.get('is_combined_resolved', False),
            is_current_clash=d.get('is_current_clash', True),
            sleeve_instance_id=d.get('sleeve_instance_id', UNASSIGNED_ID),
            cluster_instance_id=d.get('cluster_instance_id', UNASSIGNED_ID),
            combined_instance_id=d.get('combined_instance_id', UNASSIGNED_ID),
            corners=d.get('corners'),
            width=d.get('width', 0.0),
            height=d.get('height', 0.0),
            diameter=d.get('diameter', 0.0),
            rotation_deg=d.get('rotation_deg', 0.0),
        )


# =============================================================================
# SECTION 3: ClusterSleeve
# =============================================================================

@dataclass
class ClusterSleeve:
    """
    Several ClashZones of one category sharing one opening.

    Scope is (combo_id, filter_id, category). `content_guid` is derived from
    `constituent_guids` by refresh_identity(); it is None when the cluster
    has no members, in which case the instance id is the only key.
    """
    combo_id: int
    filter_id: int
    category: str
    constituent_guids: List[str] = field(default_factory=list)

    cluster_id: Optional[int] = None              # database row id
    cluster_instance_id: int = UNASSIGNED_ID      # host-assigned, volatile
    combined_instance_id: int = UNASSIGNED_ID     # owning combined sleeve, if any
    content_guid: Optional[str] = None

    bbox_min: Point3 = ORIGIN
    bbox_max: Point3 = ORIGIN
    width: float = 0.0
    height: float = 0.0
    depth: float = 0.0
    rotation_deg: float = 0.0
    is_rotated: bool = False
    placement: Point3 = ORIGIN
    corners: Corners = field(default_factory=_zero_corners)
    host_type: str = ""                           # pass-through host bookkeeping
    host_orientation: str = ""

    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def __post_init__(self):
        self.bbox_min = as_point(self.bbox_min)
        self.bbox_max = as_point(self.bbox_max)
        self.placement = as_point(self.placement)
        self.corners = as_corners(self.corners)

    @property
    def scope(self) -> Tuple[int, int, str]:
        return (self.combo_id, self.filter_id, self.category)

    def refresh_identity(self) -> Optional[str]:
        """De-duplicate members, recompute and store the content GUID."""
        self.constituent_guids = dedupe_preserving_order(
            normalize_guid(g) for g in self.constituent_guids if g
        )
        self.content_guid = compute_cluster_identity(self.constituent_guids)
        return self.content_guid

    def fit_bounding_box(self) -> None:
        """Set bbox_min/bbox_max from the corners."""
        self.bbox_min, self.bbox_max = bounding_box(self.corners)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cluster_id': self.cluster_id,
            'cluster_instance_id': self.cluster_instance_id,
            'combined_instance_id': self.combined_instance_id,
            'content_guid': self.content_guid,
            'combo_id': self.combo_id,
            'filter_id': self.filter_id,
            'category': self.category,
            'constituent_guids': list(self.constituent_guids),
            'bbox_min': list(self.bbox_min),
            'bbox_max': list(self.bbox_max),
            'width': self.width,
            'height': self.height,
            'depth': self.depth,
            'rotation_deg': self.rotation_deg,
            'is_rotated': self.is_rotated,
            'placement': list(self.placement),
            'corners': [list(c) for c in self.corners],
            'host_type': self.host_type,
            'host_orientation': self.host_orientation,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'ClusterSleeve':
        return cls(
            combo_id=d['combo_id'],
            filter_id=d['filter_id'],
            category=d['category'],
            constituent_guids=list(d.get('constituent_guids', [])),
            cluster_id=d.get('cluster_id'),
            cluster_instance_id=d.get('cluster_instance_id', UNASSIGNED_ID),
            combined_instance_id=d.get('combined_instance_id', UNASSIGNED_ID),
            content_guid=d.get('content_guid'),
            bbox_min=d.get('bbox_min', ORIGIN),
            bbox_max=d.get('bbox_max', ORIGIN),
            width=d.get('width', 0.0),
            height=d.get('height', 0.0),
            depth=d.get('depth', 0.0),
            rotation_deg=d.get('rotation_deg', 0.0),
            is_rotated=d.get('is_rotated', False),
            placement=d.get('placement', ORIGIN),
            corners=d.get('corners'),
            host_type=d.get('host_type', ""),
            host_orientation=d.get('host_orientation', ""),
            created_at=d.get('created_at'),
            updated_at=d.get('updated_at'),
        )


# =============================================================================
# SECTION 4: CombinedSleeve
# =============================================================================

class ConstituentType(str, Enum):
    INDIVIDUAL = CONSTITUENT_INDIVIDUAL
    CLUSTER = CONSTITUENT_CLUSTER


@dataclass
class SleeveConstituent:
    """A member of a combined sleeve: one ClashZone or one ClusterSleeve."""
    constituent_type: ConstituentType
    category: str
    clash_zone_guid: Optional[str] = None
    cluster_instance_id: Optional[int] = None
    cluster_db_id: Optional[int] = None

    constituent_id: Optional[int] = None
    combined_id: Optional[int] = None

    def __post_init__(self):
        self.constituent_type = ConstituentType(self.constituent_type)
        if self.clash_zone_guid:
            self.clash_zone_guid = normalize_guid(self.clash_zone_guid)

    @classmethod
    def individual(cls, clash_zone_guid: str, category: str) -> 'SleeveConstituent':
        return cls(ConstituentType.INDIVIDUAL, category, clash_zone_guid=clash_zone_guid)

    @classmethod
    def cluster(cls, category: str, cluster_instance_id: Optional[int] = None,
                cluster_db_id: Optional[int] = None) -> 'SleeveConstituent':
        return cls(ConstituentType.CLUSTER, category,
                   cluster_instance_id=cluster_instance_id, cluster_db_id=cluster_db_id)

    def identity_key(self) -> Optional[str]:
        return constituent_key(
            self.constituent_type.value,
            clash_zone_guid=self.clash_zone_guid,
            cluster_instance_id=self.cluster_instance_id,
            cluster_db_id=self.cluster_db_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'constituent_id': self.constituent_id,
            'combined_id': self.combined_id,
            'constituent_type': self.constituent_type.value,
            'category': self.category,
            'clash_zone_guid': self.clash_zone_guid,
            'cluster_instance_id': self.cluster_instance_id,
            'cluster_db_id': self.cluster_db_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'SleeveConstituent':
        return cls(
            constituent_type=d['constituent_type'],
            category=d['category'],
            clash_zone_guid=d.get('clash_zone_guid'),
            cluster_instance_id=d.get('cluster_instance_id'),
            cluster_db_id=d.get('cluster_db_id'),
            constituent_id=d.get('constituent_id'),
            combined_id=d.get('combined_id'),
        )


@dataclass
class CombinedSleeve:
    """Cross-category group of ClashZones and/or clusters under one opening."""
    combo_id: int
    filter_id: int
    constituents: List[SleeveConstituent] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)

    combined_id: Optional[int] = None             # database row id
    combined_instance_id: int = UNASSIGNED_ID
    content_hash: Optional[str] = None

    bbox_min: Point3 = ORIGIN
    bbox_max: Point3 = ORIGIN
    width: float = 0.0
    height: float = 0.0
    depth: float = 0.0
    rotation_deg: float = 0.0
    placement: Point3 = ORIGIN
    corners: Corners = field(default_factory=_zero_corners)
    host_type: str = ""
    host_orientation: str = ""

    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    def __post_init__(self):
        self.bbox_min = as_point(self.bbox_min)
        self.bbox_max = as_point(self.bbox_max)
        self.placement = as_point(self.placement)
        self.corners = as_corners(self.corners)

    def refresh_identity(self) -> Optional[str]:
        """
        De-duplicate constituents by identity key, recompute the content hash
        and fill `categories` from the constituents when empty.
        """
        keyed = []
        unkeyed = []
        for c in self.constituents:
            (keyed if c.identity_key() else unkeyed).append(c)
        self.constituents = dedupe_preserving_order(keyed, key=SleeveConstituent.identity_key) + unkeyed
        self.content_hash = compute_combined_identity(c.identity_key() for c in self.constituents)
        if not self.categories:
            self.categories = dedupe_preserving_order(c.category for c in self.constituents)
        return self.content_hash

    @property
    def individual_guids(self) -> List[str]:
        return [c.clash_zone_guid for c in self.constituents
                if c.constituent_type == ConstituentType.INDIVIDUAL and c.clash_zone_guid]

    @property
    def cluster_instance_ids(self) -> List[int]:
        return [c.cluster_instance_id for c in self.constituents
                if c.constituent_type == ConstituentType.CLUSTER
                and c.cluster_instance_id is not None and c.cluster_instance_id > 0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'combined_id': self.combined_id,
            'combined_instance_id': self.combined_instance_id,
            'content_hash': self.content_hash,
            'combo_id': self.combo_id,
            'filter_id': self.filter_id,
            'categories': list(self.categories),
            'constituents': [c.to_dict() for c in self.constituents],
            'bbox_min': list(self.bbox_min),
            'bbox_max': list(self.bbox_max),
            'width': self.width,
            'height': self.height,
            'depth': self.depth,
            'rotation_deg': self.rotation_deg,
            'placement': list(self.placement),
            'corners': [list(c) for c in self.corners],
            'host_type': self.host_type,
            'host_orientation': self.host_orientation,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'CombinedSleeve':
        return cls(
            combo_id=d['combo_id'],
            filter_id=d['filter_id'],
            constituents=[SleeveConstituent.from_dict(c) for c in d.get('constituents', [])],
            categories=list(d.get('categories', [])),
            combined_id=d.get('combined_id'),
            combined_instance_id=d.get('combined_instance_id', UNASSIGNED_ID),
            content_hash=d.get('content_hash'),
            bbox_min=d.get('bbox_min', ORIGIN),
            bbox_max=d.get('bbox_max', ORIGIN),
            width=d.get('width', 0.0),
            height=d.get('height', 0.0),
            depth=d.get('depth', 0.0),
            rotation_deg=d.get('rotation_deg', 0.0),
            placement=d.get('placement', ORIGIN),
            corners=d.get('corners'),
            host_type=d.get('host_type', ""),
            host_orientation=d.get('host_orientation', ""),
            created_at=d.get('created_at'),
            updated_at=d.get('updated_at'),
        )


# =============================================================================
# SECTION 5: Markers and Snapshots
# =============================================================================

@dataclass
class CategoryProcessingMarker:
    """High-water mark of processed source records for one category."""
    category: str
    last_processed_count: int = 0
    last_processed_ids: Optional[str] = None
    marked_at: Optional[float] = None
    updated_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category,
            'last_processed_count': self.last_processed_count,
            'last_processed_ids': self.last_processed_ids,
            'marked_at': self.marked_at,
            'updated_at': self.updated_at,
        }


@dataclass
class SleeveSnapshotView:
    """
    Parameter values captured for one individual sleeve or one cluster.

    Parameter lookups through get_*_parameter() ignore case.
    """
    source_type: str = CONSTITUENT_INDIVIDUAL
    sleeve_instance_id: Optional[int] = None
    cluster_instance_id: Optional[int] = None
    filter_id: Optional[int] = None
    combo_id: Optional[int] = None
    mep_element_ids: List[int] = field(default_factory=list)
    host_element_ids: List[int] = field(default_factory=list)
    mep_parameters: Dict[str, str] = field(default_factory=dict)
    host_parameters: Dict[str, str] = field(default_factory=dict)
    source_doc_keys: List[str] = field(default_factory=list)
    host_doc_keys: List[str] = field(default_factory=list)
    clash_zone_guid: Optional[str] = None
    snapshot_id: Optional[int] = None

    def __post_init__(self):
        if self.clash_zone_guid:
            self.clash_zone_guid = normalize_guid(self.clash_zone_guid)

    @staticmethod
    def _lookup(params: Dict[str, str], name: str) -> Optional[str]:
        if name in params:
            return params[name]
        lowered = name.lower()
        for key, value in params.items():
            if key.lower() == lowered:
                return value
        return None

    def get_mep_parameter(self, name: str) -> Optional[str]:
        return self._lookup(self.mep_parameters, name)

    def get_host_parameter(self, name: str) -> Optional[str]:
        return self._lookup(self.host_parameters, name)


@dataclass(frozen=True)
class ConstituentSnapshotRef:
    """Pointer from a combined sleeve to the snapshot of one constituent."""
    source_type: str
    clash_zone_guid: Optional[str] = None
    cluster_instance_id: Optional[int] = None


@dataclass
class MarkableSleeve:
    """
    A placed sleeve joined with its snapshot parameters.

    Parameters are empty dicts when no snapshot was captured.
    """
    source_type: str
    instance_id: int
    category: str
    identity: Optional[str] = None     # ClashZone GUID or cluster content GUID
    mep_parameters: Dict[str, str] = field(default_factory=dict)
    host_parameters: Dict[str, str] = field(default_factory=dict)

    @property
    def has_snapshot(self) -> bool:
        return bool(self.mep_parameters or self.host_parameters)


@dataclass
class MarkableClashZone:
    """
    A ClashZone covered by a placed sleeve of any tier, with the parameters
    to mark it with.

    Parameters come from the owning cluster's snapshot when there is one,
    otherwise from the zone's individual snapshot.
    """
    guid: str
    category: str
    level_name: str = ""
    sleeve_instance_id: int = UNASSIGNED_ID
    cluster_instance_id: int = UNASSIGNED_ID
    combined_instance_id: int = UNASSIGNED_ID
    intersection: Point3 = ORIGIN
    mep_parameters: Dict[str, str] = field(default_factory=dict)
    host_parameters: Dict[str, str] = field(default_factory=dict)

    @property
    def target_instance_id(self) -> int:
        """Host instance that physically covers the zone: highest tier wins."""
        for instance_id in (self.combined_instance_id, self.cluster_instance_id,
                            self.sleeve_instance_id):
            if instance_id > 0:
                return instance_id
        return UNASSIGNED_ID

    @property
    def is_combined(self) -> bool:
        return self.combined_instance_id > 0
