"""
Logging Configuration
Sets up the package logger and the structured database-operation log line.
"""
import logging
import sys
from typing import Any, Optional

from .constants import LOG_NAMESPACE, LOG_PARAM_TRUNCATE


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configures the logger for the 'sleeve_ledger' namespace.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.
    """
    logger = logging.getLogger(LOG_NAMESPACE)
    logger.setLevel(level)

    # Re-running must not stack handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def _truncate(value: Any) -> str:
    text = str(value)
    if len(text) > LOG_PARAM_TRUNCATE:
        return text[:LOG_PARAM_TRUNCATE] + "..."
    return text


def log_operation(
    logger: logging.Logger,
    operation: str,
    table: str,
    params: Optional[dict] = None,
    rows_affected: Optional[int] = None,
    info: Optional[str] = None,
    level: int = logging.DEBUG,
) -> None:
    """
    Log one database operation as a single line.

    Example:
        INSERT cluster_sleeves rows=1 params={combo_id=3, category=Pipes} new cluster
    """
    if not logger.isEnabledFor(level):
        return
    parts = [operation, table]
    if rows_affected is not None:
        parts.append(f"rows={rows_affected}")
    if params:
        rendered = ", ".join(f"{k}={_truncate(v)}" for k, v in params.items())
        parts.append(f"params={{{rendered}}}")
    if info:
        parts.append(info)
    logger.log(level, " ".join(parts))
