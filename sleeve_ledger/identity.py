"""
Identity Engine: Deterministic Content Identifiers
===================================================

Turns a constituent set into an identifier that survives re-detection runs.
Host instance ids change from run to run; constituent GUIDs do not, so the
identity of a cluster or combined sleeve is derived from its members only.

    {B, A, C}  ──sort──►  "A|B|C"  ──hash──►  identity
    {C, A, B}  ──sort──►  "A|B|C"  ──hash──►  same identity

Contract (both functions):
- Empty input → None ("no identity"); caller falls back to instance-id keying
- Same set in any order → same identity
- Duplicates in the input are ignored (set semantics)
- A set differing by one element → different identity

Cluster identity is an MD5 digest rendered as a UUID string; combined
identity is a SHA-256 hex digest over typed constituent keys:

    I:<clash zone guid>        individual constituent
    C:<cluster instance id>    cluster constituent, placed
    C_DB:<cluster db id>       cluster constituent, not yet placed (best effort)
"""

from __future__ import annotations
from typing import Iterable, List, Optional, Sequence
import hashlib
import logging
import uuid

import numpy as np

from .constants import (
    GUID_SEPARATOR,
    POINT_DECIMALS,
    INDIVIDUAL_KEY_PREFIX,
    CLUSTER_KEY_PREFIX,
    CLUSTER_DB_KEY_PREFIX,
    CONSTITUENT_INDIVIDUAL,
    CONSTITUENT_CLUSTER,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Canonical Forms
# =============================================================================

def normalize_guid(value) -> str:
    """Canonical GUID text: stripped, uppercase, no braces."""
    return str(value).strip().strip("{}").upper()


def canonical_string(items: Iterable[str]) -> str:
    """Sorted, de-duplicated, '|'-joined form of a string set (ordinal order)."""
    return GUID_SEPARATOR.join(sorted(set(items)))


def _digest_to_guid(digest: bytes) -> str:
    return str(uuid.UUID(bytes=digest[:16])).upper()


# =============================================================================
# Cluster Identity
# =============================================================================

def compute_cluster_identity(clash_zone_guids: Iterable) -> Optional[str]:
    """
    Deterministic GUID for a cluster from its constituent ClashZone GUIDs.

    Args:
        clash_zone_guids: GUIDs (str or uuid.UUID) of the member ClashZones

    Returns:
        Uppercase GUID string, or None if there are no usable members
    """
    members = {normalize_guid(g) for g in clash_zone_guids if g is not None and str(g).strip()}
    if not members:
        return None
    digest = hashlib.md5(canonical_string(members).encode("utf-8")).digest()
    return _digest_to_guid(digest)


# =============================================================================
# Combined Identity
# =============================================================================

def constituent_key(
    constituent_type: str,
    clash_zone_guid: Optional[str] = None,
    cluster_instance_id: Optional[int] = None,
    cluster_db_id: Optional[int] = None,
) -> Optional[str]:
    """
    Typed key for one combined-sleeve constituent.

    Clusters key on their host instance id when placed. Before placement the
    per-row database id is used, which is NOT stable across runs.
    """
    if constituent_type == CONSTITUENT_INDIVIDUAL:
        if not clash_zone_guid:
            return None
        return f"{INDIVIDUAL_KEY_PREFIX}{normalize_guid(clash_zone_guid)}"
    if constituent_type == CONSTITUENT_CLUSTER:
        if cluster_instance_id is not None and cluster_instance_id > 0:
            return f"{CLUSTER_KEY_PREFIX}{cluster_instance_id}"
        if cluster_db_id is not None and cluster_db_id > 0:
            return f"{CLUSTER_DB_KEY_PREFIX}{cluster_db_id}"
        return None
    raise ValueError(f"Unknown constituent type: {constituent_type!r}")


def compute_combined_identity(keys: Iterable[Optional[str]]) -> Optional[str]:
    """
    Deterministic SHA-256 hex hash over constituent keys.

    None keys (constituents that could not be keyed) are dropped; if nothing
    remains, returns None.
    """
    usable = {k for k in keys if k}
    if not usable:
        return None
    return hashlib.sha256(canonical_string(usable).encode("utf-8")).hexdigest()


def is_best_effort_identity(keys: Iterable[Optional[str]]) -> bool:
    """True when any key relies on the unstable database-id fallback."""
    return any(k and k.startswith(CLUSTER_DB_KEY_PREFIX) for k in keys)


# =============================================================================
# ClashZone Identity
# =============================================================================

def round_point(point: Sequence[float], decimals: int = POINT_DECIMALS) -> np.ndarray:
    """Round an (x, y, z) point; -0.0 is folded into 0.0."""
    arr = np.round(np.asarray(point, dtype=np.float64), decimals)
    if arr.shape != (3,):
        raise ValueError(f"Expected a 3D point, got shape {arr.shape}")
    return arr + 0.0


def clash_zone_guid(mep_element_id: int, host_element_id: int, point: Sequence[float]) -> str:
    """
    Stable GUID for one MEP/host intersection.

    Same elements intersecting at the same (rounded) point give the same GUID
    on every detection run.
    """
    x, y, z = round_point(point)
    text = GUID_SEPARATOR.join([
        str(int(mep_element_id)),
        str(int(host_element_id)),
        f"{x:.{POINT_DECIMALS}f}",
        f"{y:.{POINT_DECIMALS}f}",
        f"{z:.{POINT_DECIMALS}f}",
    ])
    return _digest_to_guid(hashlib.md5(text.encode("utf-8")).digest())


def dedupe_preserving_order(items: Iterable, key=None) -> List:
    """Drop repeated items (by key) keeping first occurrence order."""
    seen = set()
    out = []
    for item in items:
        k = key(item) if key is not None else item
        if k in seen:
            continue
        seen.add(k)
        out.append(item)
    return out
