"""
Ledger Configuration
====================

One explicit configuration object threaded through every component
constructor. Verbosity lives here rather than in process-wide state, so
two ledgers in one process can log differently.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Optional

from .constants import DEFAULT_SAMPLE_LIMIT


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class LedgerConfig:
    """
    Configuration for a SleeveLedger and its stores.

    Attributes:
        db_path: DuckDB file path, or ":memory:" for a throwaway store
        verbose: Emit per-row diagnostics at DEBUG level
        sample_limit: Max characters of processed-id sample kept per marker
        log_level: Level for setup_logging()
        log_file: Optional log file for setup_logging()
    """
    db_path: str = ":memory:"
    verbose: bool = False
    sample_limit: int = DEFAULT_SAMPLE_LIMIT
    log_level: int = logging.INFO
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.sample_limit <= 0:
            raise ValueError(f"sample_limit must be positive, got {self.sample_limit}")

    @classmethod
    def from_env(cls) -> 'LedgerConfig':
        """Create config from SLEEVE_LEDGER_* environment variables."""
        level_name = os.getenv('SLEEVE_LEDGER_LOG_LEVEL', 'INFO').upper()
        level = logging.getLevelName(level_name)
        if not isinstance(level, int):
            raise ValueError(f"Unknown SLEEVE_LEDGER_LOG_LEVEL: {level_name}")

        return cls(
            db_path=os.getenv('SLEEVE_LEDGER_DB_PATH', ':memory:'),
            verbose=os.getenv('SLEEVE_LEDGER_VERBOSE', '').strip().lower() in _TRUE_VALUES,
            sample_limit=int(os.getenv('SLEEVE_LEDGER_SAMPLE_LIMIT', str(DEFAULT_SAMPLE_LIMIT))),
            log_level=level,
            log_file=os.getenv('SLEEVE_LEDGER_LOG_FILE') or None,
        )
