"""
Record stores for the ledger tables.

Dependency order (each store cascades into the ones before it):

    ClashZoneRepository
    ClusterSleeveRepository   → ClashZoneRepository
    CombinedSleeveRepository  → ClashZoneRepository, ClusterSleeveRepository
    SleeveSnapshotRepository
"""

from .base import Repository, SaveResult
from .clash_zones import ClashZoneRepository
from .clusters import ClusterSleeveRepository
from .combined import CombinedSleeveRepository
from .snapshots import SleeveSnapshotRepository

__all__ = [
    'Repository',
    'SaveResult',
    'ClashZoneRepository',
    'ClusterSleeveRepository',
    'CombinedSleeveRepository',
    'SleeveSnapshotRepository',
]
