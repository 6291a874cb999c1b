"""
Category Processing Markers
===========================

Per-category high-water mark: how many source records of that category have
already been processed. The next pass only looks at the suffix added since.

    source ids:  [s1 s2 s3 s4 s5 s6 s7]        last_processed_count = 4
                  └──── seen ────┘ └ new ┘
    get_new_sleeves_only → [s5 s6 s7]

Assumes the source list is append-only and stably ordered. Reordering or
removing source records makes the suffix meaningless; reset the marker when
that happens.

Store failures are logged and swallowed: a missing marker means "process
everything", which is always safe because processing is idempotent. The
exception is a write joined to the caller's transaction: the failure has
aborted that transaction, so it is raised as MarkerOperationError and the
caller's block rolls back.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging
import time

import duckdb

from .config import LedgerConfig
from .constants import LEVEL_SEPARATOR, PROCESSING_MARKERS
from .errors import MarkerOperationError
from .logging_config import log_operation
from .models import CategoryProcessingMarker
from .schema import MARKER_COLUMNS, row_to_dict
from .session import SleeveDatabase

logger = logging.getLogger(__name__)


def level_category(category: str, level_name: Optional[str] = None) -> str:
    """'Pipes' on 'Level 1' -> 'Pipes|Level 1'. No level leaves the category as is."""
    if not level_name:
        return category
    return f"{category}{LEVEL_SEPARATOR}{level_name}"


# =============================================================================
# SECTION 1: Abstract Marker Store
# =============================================================================

class MarkerStore(ABC):
    """Abstract interface for per-category processing markers."""

    @abstractmethod
    def get_marker(self, category: str) -> Tuple[int, Optional[str]]:
        """(last_processed_count, id sample); (0, None) when absent."""
        pass

    @abstractmethod
    def update_marker(self, category: str, count: int, sample_ids: Optional[str] = None) -> bool:
        """Insert or update the marker for a category."""
        pass

    @abstractmethod
    def reset_marker(self, category: str) -> bool:
        """Delete one category's marker."""
        pass

    @abstractmethod
    def reset_all_markers(self) -> int:
        """Delete every marker. Returns number removed."""
        pass

    @abstractmethod
    def reset_markers_for_level(self, level: str) -> int:
        """Delete markers for categories qualified with '|<level>'."""
        pass

    @abstractmethod
    def list_markers(self) -> List[CategoryProcessingMarker]:
        """All markers, ordered by category."""
        pass

    def _warn_on_regression(self, category: str, previous: int, count: int):
        if count < previous:
            logger.warning(
                "Marker for '%s' moved backwards (%d -> %d); already-skipped "
                "records may be reprocessed", category, previous, count
            )


# =============================================================================
# SECTION 2: Memory Store (Testing/Temporary)
# =============================================================================

class MemoryMarkerStore(MarkerStore):
    """In-memory marker store. Data is lost when the process exits."""

    def __init__(self):
        self._markers: Dict[str, CategoryProcessingMarker] = {}

    def get_marker(self, category: str) -> Tuple[int, Optional[str]]:
        marker = self._markers.get(category)
        if marker is None:
            return 0, None
        return marker.last_processed_count, marker.last_processed_ids

    def update_marker(self, category: str, count: int, sample_ids: Optional[str] = None) -> bool:
        now = time.time()
        marker = self._markers.get(category)
        if marker is None:
            self._markers[category] = CategoryProcessingMarker(category, count, sample_ids, now, now)
            return True
        self._warn_on_regression(category, marker.last_processed_count, count)
        marker.last_processed_count = count
        marker.last_processed_ids = sample_ids
        marker.updated_at = now
        return True

    def reset_marker(self, category: str) -> bool:
        return self._markers.pop(category, None) is not None

    def reset_all_markers(self) -> int:
        n = len(self._markers)
        self._markers.clear()
        return n

    def reset_markers_for_level(self, level: str) -> int:
        suffix = f"{LEVEL_SEPARATOR}{level}"
        doomed = [c for c in self._markers if c.endswith(suffix)]
        for category in doomed:
            del self._markers[category]
        return len(doomed)

    def list_markers(self) -> List[CategoryProcessingMarker]:
        return [self._markers[c] for c in sorted(self._markers)]


# =============================================================================
# SECTION 3: DuckDB Store
# =============================================================================

class DuckDBMarkerStore(MarkerStore):
    """
    Markers in the category_processing_markers table.

    Writes join the session's ambient transaction when there is one, so a
    marker advanced inside a batch's transaction rolls back with the batch.
    """

    def __init__(self, db: SleeveDatabase):
        self.db = db
        self.verbose = db.config.verbose

    def get_marker(self, category: str) -> Tuple[int, Optional[str]]:
        try:
            row = self.db.conn.execute(
                f"SELECT last_processed_count, last_processed_ids FROM {PROCESSING_MARKERS} "
                f"WHERE category = ?", [category]
            ).fetchone()
        except duckdb.Error as e:
            logger.error("Failed to read marker for '%s', processing everything: %s", category, e)
            return 0, None
        if row is None:
            return 0, None
        return int(row[0] or 0), row[1]

    def update_marker(self, category: str, count: int, sample_ids: Optional[str] = None) -> bool:
        now = time.time()
        joined = self.db.in_transaction
        try:
            with self.db.unit_of_work() as conn:
                row = conn.execute(
                    f"SELECT last_processed_count FROM {PROCESSING_MARKERS} WHERE category = ?",
                    [category],
                ).fetchone()
                if row is None:
                    conn.execute(
                        f"INSERT INTO {PROCESSING_MARKERS} ({', '.join(MARKER_COLUMNS)}) "
                        f"VALUES (?, ?, ?, ?, ?)",
                        [category, count, sample_ids, now, now],
                    )
                    operation = "INSERT"
                else:
                    self._warn_on_regression(category, int(row[0] or 0), count)
                    conn.execute(
                        f"UPDATE {PROCESSING_MARKERS} SET last_processed_count = ?, "
                        f"last_processed_ids = ?, updated_at = ? WHERE category = ?",
                        [count, sample_ids, now, category],
                    )
                    operation = "UPDATE"
        except duckdb.Error as e:
            logger.error("Failed to update marker for '%s': %s", category, e)
            if joined:
                raise MarkerOperationError("update", str(e)) from e
            return False
        if self.verbose:
            log_operation(logger, operation, PROCESSING_MARKERS,
                          {'category': category, 'count': count, 'sample': sample_ids}, 1)
        return True

    def _delete(self, where: str, params: list, description: str) -> int:
        joined = self.db.in_transaction
        try:
            with self.db.unit_of_work() as conn:
                removed = conn.execute(
                    f"DELETE FROM {PROCESSING_MARKERS} {where} RETURNING category", params
                ).fetchall()
        except duckdb.Error as e:
            logger.error("Failed to reset markers (%s): %s", description, e)
            if joined:
                raise MarkerOperationError("reset", str(e)) from e
            return 0
        logger.info("Reset %d marker(s) (%s)", len(removed), description)
        return len(removed)

    def reset_marker(self, category: str) -> bool:
        return self._delete("WHERE category = ?", [category], f"category={category}") > 0

    def reset_all_markers(self) -> int:
        return self._delete("", [], "all")

    def reset_markers_for_level(self, level: str) -> int:
        return self._delete("WHERE ends_with(category, ?)", [f"{LEVEL_SEPARATOR}{level}"],
                            f"level={level}")

    def list_markers(self) -> List[CategoryProcessingMarker]:
        try:
            rows = self.db.conn.execute(
                f"SELECT {', '.join(MARKER_COLUMNS)} FROM {PROCESSING_MARKERS} ORDER BY category"
            ).fetchall()
        except duckdb.Error as e:
            logger.error("Failed to list markers: %s", e)
            return []
        return [CategoryProcessingMarker(**row_to_dict(MARKER_COLUMNS, r)) for r in rows]


# =============================================================================
# SECTION 4: Incremental Processing
# =============================================================================

class IncrementalProcessor:
    """
    Bounds reprocessing to records added since the last successful pass.

    Call mark_category_processed() only after the pass's writes have
    committed; advancing first and failing later would skip records forever.
    """

    def __init__(self, store: MarkerStore, config: Optional[LedgerConfig] = None):
        self.store = store
        self.config = config or LedgerConfig()

    def get_new_sleeves_only(self, category: str, source_ids: Sequence) -> List:
        """The suffix of source_ids beyond the category's marker."""
        ids = list(source_ids)
        last_count, _ = self.store.get_marker(category)
        if last_count <= 0:
            if self.config.verbose:
                logger.debug("'%s': no marker, processing all %d record(s)", category, len(ids))
            return ids
        if len(ids) <= last_count:
            if self.config.verbose:
                logger.debug("'%s': nothing new (%d <= %d)", category, len(ids), last_count)
            return []
        new_ids = ids[last_count:]
        if self.config.verbose:
            logger.debug("'%s': %d new record(s) after %d processed",
                         category, len(new_ids), last_count)
        return new_ids

    def mark_category_processed(self, category: str, processed: Union[int, Sequence]) -> bool:
        """
        Advance the marker.

        Args:
            category: Category name (optionally level-qualified)
            processed: Either the processed count, or the full processed id
                list (its length becomes the count, a prefix becomes the sample)
        """
        if isinstance(processed, int):
            return self.store.update_marker(category, processed, None)
        ids = list(processed)
        sample = ",".join(str(i) for i in ids)[: self.config.sample_limit] or None
        return self.store.update_marker(category, len(ids), sample)

    def reset_category_marker(self, category: str) -> bool:
        return self.store.reset_marker(category)

    def reset_all_markers(self) -> int:
        return self.store.reset_all_markers()

    def reset_markers_for_level(self, level: str) -> int:
        return self.store.reset_markers_for_level(level)

    def processing_summary(self) -> Dict[str, int]:
        return {m.category: m.last_processed_count for m in self.store.list_markers()}


def create_memory_marker_store() -> MemoryMarkerStore:
    """Create in-memory marker store."""
    return MemoryMarkerStore()


def create_duckdb_marker_store(db: SleeveDatabase) -> DuckDBMarkerStore:
    """Create marker store on an open ledger database."""
    return DuckDBMarkerStore(db)
