"""
PostgreSQL connection pool for the ingest store.

Workers and the dispatcher share one ThreadedConnectionPool; driver errors
surface as StoreError so a failing write fails only the current work unit.
"""
import logging
from contextlib import contextmanager
from typing import Iterable, Sequence

import psycopg2
from psycopg2 import extras, pool

from common.config.settings import DatabaseConfig
from common.errors import StoreError

logger = logging.getLogger(__name__)


class PostgresConnectionPool:
    """
    Thread-safe pool over psycopg2.

    Connections that die mid-transaction (server restart, network drop) are
    discarded instead of being handed back to the next caller.
    """

    dialect = 'postgres'

    def __init__(self, config: DatabaseConfig, min_conn: int = 1, max_conn: int = 20):
        self.config = config
        self.min_conn = min_conn
        self.max_conn = max_conn

        try:
            self.pool = pool.ThreadedConnectionPool(
                minconn=min_conn,
                maxconn=max_conn,
                host=config.host,
                port=config.port,
                database=config.database,
                user=config.user,
                password=config.password,
            )
        except psycopg2.Error as e:
            logger.error(f"Cannot reach {self.dsn_label}: {e}")
            raise StoreError(f"cannot connect to {self.dsn_label}: {e}") from e
        logger.info(f"Connection pool ready: {self.dsn_label} (min={min_conn}, max={max_conn})")

    @property
    def dsn_label(self) -> str:
        """host:port/database, without credentials, for log lines."""
        return f"{self.config.host}:{self.config.port}/{self.config.database}"

    @contextmanager
    def get_connection(self):
        """
        Borrow a connection for one transaction.

        Commits when the block exits cleanly and rolls back otherwise.

        Example:
            with pool.get_connection() as conn:
                cur = conn.cursor()
                cur.execute("SELECT symbol FROM tickers WHERE id = %s", (1,))
        """
        conn = self.pool.getconn()
        broken = False
        try:
            yield conn
            conn.commit()
        except psycopg2.Error as e:
            broken = bool(conn.closed)
            if not broken:
                conn.rollback()
            logger.error(f"Database error on {self.dsn_label}: {e}")
            raise StoreError(str(e)) from e
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self.pool.putconn(conn, close=broken or bool(conn.closed))

    def execute_batch(self, cur, query: str, rows: Iterable[Sequence], page_size: int = 1000) -> None:
        """Execute one statement for many parameter rows."""
        extras.execute_batch(cur, query, list(rows), page_size=page_size)

    def close(self):
        if getattr(self, 'pool', None) is not None and not self.pool.closed:
            self.pool.closeall()
            logger.info(f"Connection pool closed: {self.dsn_label}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
