# sleeve_ledger/constants.py
"""
Sleeve Ledger Constants

This module defines constants shared by the persistence layers:

IDENTITY
- GUID_SEPARATOR: Joiner for canonical constituent strings
- POINT_DECIMALS: Rounding applied to intersection points before hashing

RESOLUTION STATE
- UNASSIGNED_ID: Sentinel for "no host instance yet"
- CONSTITUENT_* prefixes for combined identity keys

TABLES
- Table names for the persisted schema
"""


# =============================================================================
# IDENTITY
# =============================================================================

GUID_SEPARATOR = "|"
POINT_DECIMALS = 3   # 1 mm in metres, 0.001 ft in feet; both stable enough

# Combined identity key prefixes
INDIVIDUAL_KEY_PREFIX = "I:"
CLUSTER_KEY_PREFIX = "C:"
CLUSTER_DB_KEY_PREFIX = "C_DB:"


# =============================================================================
# RESOLUTION STATE
# =============================================================================

UNASSIGNED_ID = -1

CONSTITUENT_INDIVIDUAL = "Individual"
CONSTITUENT_CLUSTER = "Cluster"

# Pseudo-category selecting zones covered by a combined sleeve
COMBINED_CATEGORY = "Combined"


# =============================================================================
# MARKERS
# =============================================================================

DEFAULT_SAMPLE_LIMIT = 100   # Characters of id sample kept per marker
LEVEL_SEPARATOR = "|"        # "Pipes|Level 1" -> level-qualified category


# =============================================================================
# LOGGING
# =============================================================================

LOG_NAMESPACE = "sleeve_ledger"
LOG_PARAM_TRUNCATE = 100


# =============================================================================
# TABLES
# =============================================================================

CLASH_ZONES = "clash_zones"
CLUSTER_SLEEVES = "cluster_sleeves"
COMBINED_SLEEVES = "combined_sleeves"
COMBINED_CONSTITUENTS = "combined_sleeve_constituents"
PROCESSING_MARKERS = "category_processing_markers"
SLEEVE_SNAPSHOTS = "sleeve_snapshots"
SCHEMA_MIGRATIONS = "schema_migrations"

ALL_TABLES = (
    CLASH_ZONES,
    CLUSTER_SLEEVES,
    COMBINED_SLEEVES,
    COMBINED_CONSTITUENTS,
    PROCESSING_MARKERS,
    SLEEVE_SNAPSHOTS,
)

# Dependents before the rows they reference
CLEAR_ORDER = (
    COMBINED_CONSTITUENTS,
    COMBINED_SLEEVES,
    CLUSTER_SLEEVES,
    SLEEVE_SNAPSHOTS,
    PROCESSING_MARKERS,
    CLASH_ZONES,
)
