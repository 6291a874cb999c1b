"""
Database Session
================

One connection, at most one transaction.

    with db.transaction():          # explicit: caller groups several writes
        repo.save_cluster(a)        #   └── unit_of_work() joins it
        repo.batch_save_clusters(b) #   └── unit_of_work() joins it

    repo.save_cluster(c)            # implicit: unit_of_work() opens its own

transaction() while another is active raises TransactionError; the host
application is single-threaded per document, so a second transaction can only
be a programming error. Any exception inside the block rolls the whole block
back and propagates.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Dict, Iterator, Optional
import logging

import duckdb

from .config import LedgerConfig
from .constants import ALL_TABLES, CLEAR_ORDER
from .errors import TransactionError
from .schema import init_schema, restart_sequences, table_counts

logger = logging.getLogger(__name__)


class SleeveDatabase:
    """
    DuckDB connection owner for the ledger.

    Args:
        config: Ledger configuration (db_path, verbosity)
        conn: Existing connection to adopt instead of opening db_path
        auto_migrate: Add missing columns to tables from older releases
    """

    def __init__(self, config: Optional[LedgerConfig] = None,
                 conn: Optional[duckdb.DuckDBPyConnection] = None,
                 auto_migrate: bool = True):
        self.config = config or LedgerConfig()
        self.db_path = self.config.db_path
        self._owns_connection = conn is None
        self.conn = conn if conn is not None else duckdb.connect(self.db_path)
        self._in_transaction = False
        init_schema(self.conn, auto_migrate=auto_migrate)
        if self.config.verbose:
            logger.debug("Opened ledger store at %s", self.db_path)

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Begin, yield the connection, commit; roll back on any exception."""
        if self._in_transaction:
            raise TransactionError(
                "A transaction is already active on this connection; "
                "nested operations must use unit_of_work()"
            )
        self.conn.execute("BEGIN TRANSACTION")
        self._in_transaction = True
        try:
            yield self.conn
            self.conn.execute("COMMIT")
        except BaseException:
            self._rollback()
            raise
        finally:
            self._in_transaction = False

    @contextmanager
    def unit_of_work(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Join the ambient transaction, or open one for this block."""
        if self._in_transaction:
            yield self.conn
            return
        with self.transaction() as conn:
            yield conn

    def _rollback(self) -> None:
        try:
            self.conn.execute("ROLLBACK")
        except duckdb.Error as e:
            # A failed COMMIT has already ended the transaction
            logger.debug("ROLLBACK after failure was a no-op: %s", e)
        else:
            logger.warning("Transaction rolled back")

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def table_counts(self) -> Dict[str, int]:
        """Row count per ledger table."""
        return table_counts(self.conn, ALL_TABLES)

    def clear_all_tables(self) -> Dict[str, int]:
        """
        Delete every ledger row and restart the id sequences, in one
        transaction. schema_migrations is kept. Returns rows deleted per table.
        """
        deleted = {}
        with self.transaction() as conn:
            for table in CLEAR_ORDER:
                deleted[table] = len(conn.execute(f"DELETE FROM {table} RETURNING 1").fetchall())
            restart_sequences(conn)
        logger.info("Cleared all ledger tables (%d row(s))", sum(deleted.values()))
        return deleted

    def close(self):
        if self._in_transaction:
            raise TransactionError("Cannot close the connection inside a transaction")
        if self._owns_connection:
            self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
