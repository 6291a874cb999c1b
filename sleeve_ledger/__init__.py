"""
Sleeve Ledger

Persistence engine for sleeve resolution state across repeated clash
detection runs:
- identity: deterministic, order-independent GUIDs from constituent sets
- markers: per-category high-water marks for incremental processing
- repositories: ClashZone / ClusterSleeve / CombinedSleeve / snapshot stores
- snapshot_index: in-memory parameter lookup built once per session

================================================================================
WHY CONTENT IDENTITY
================================================================================

The host application hands out a new instance id for the same physical
penetration on every run. A cluster's identity is therefore the hash of its
members, not its instance id:

    run 1: cluster {A, B, C}  instance 9001  → guid G1
    run 2: cluster {A, B, C}  instance 9417  → guid G1   (same row, updated)
    run 3: cluster {A, B}     instance 9417  → guid G2   (scope replaced)

================================================================================
RESOLUTION TIERS
================================================================================

    Unresolved → IndividuallyResolved → ClusterResolved → CombinedResolved

Flags are additive. Only force_redetection_reset() clears them.
"""

from .config import LedgerConfig
from .errors import (
    SleeveLedgerError,
    ValidationError,
    TransactionError,
    SchemaLayoutError,
    DatabaseOperationError,
    ClashZoneOperationError,
    ClusterSleeveOperationError,
    CombinedSleeveOperationError,
    SnapshotOperationError,
    MarkerOperationError,
)
from .identity import (
    compute_cluster_identity,
    compute_combined_identity,
    constituent_key,
    clash_zone_guid,
)
from .models import (
    ClashZone,
    ClusterSleeve,
    CombinedSleeve,
    SleeveConstituent,
    ConstituentType,
    ResolutionTier,
    CategoryProcessingMarker,
    SleeveSnapshotView,
    ConstituentSnapshotRef,
    MarkableSleeve,
    MarkableClashZone,
)
from .markers import (
    MarkerStore,
    MemoryMarkerStore,
    DuckDBMarkerStore,
    IncrementalProcessor,
    create_memory_marker_store,
    create_duckdb_marker_store,
    level_category,
)
from .session import SleeveDatabase
from .snapshot_index import SnapshotIndex
from .repositories import (
    SaveResult,
    ClashZoneRepository,
    ClusterSleeveRepository,
    CombinedSleeveRepository,
    SleeveSnapshotRepository,
)
from .ledger import SleeveLedger, create_ledger
from .logging_config import setup_logging

__version__ = "0.1.0"

__all__ = [
    # Config / logging
    'LedgerConfig', 'setup_logging',
    # Errors
    'SleeveLedgerError', 'ValidationError', 'TransactionError', 'SchemaLayoutError',
    'DatabaseOperationError', 'ClashZoneOperationError', 'ClusterSleeveOperationError',
    'CombinedSleeveOperationError', 'SnapshotOperationError', 'MarkerOperationError',
    # Identity
    'compute_cluster_identity', 'compute_combined_identity', 'constituent_key', 'clash_zone_guid',
    # Models
    'ClashZone', 'ClusterSleeve', 'CombinedSleeve', 'SleeveConstituent', 'ConstituentType',
    'ResolutionTier', 'CategoryProcessingMarker', 'SleeveSnapshotView', 'ConstituentSnapshotRef',
    'MarkableSleeve', 'MarkableClashZone',
    # Markers
    'MarkerStore', 'MemoryMarkerStore', 'DuckDBMarkerStore', 'IncrementalProcessor',
    'create_memory_marker_store', 'create_duckdb_marker_store', 'level_category',
    # Stores
    'SleeveDatabase', 'SnapshotIndex', 'SaveResult', 'ClashZoneRepository',
    'ClusterSleeveRepository', 'CombinedSleeveRepository', 'SleeveSnapshotRepository',
    'SleeveLedger', 'create_ledger',
]
