"""
SQLite connection holder with the same surface as PostgresConnectionPool.

Repositories write psycopg2-style SQL (``%s`` placeholders,
``ON CONFLICT ... DO UPDATE``); this pool translates placeholders so the
same statements run against a local file or ``:memory:`` database.
"""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Sequence

from common.errors import StoreError

logger = logging.getLogger(__name__)

sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=' '))
sqlite3.register_adapter(date, lambda value: value.isoformat())


def _translate(query: str) -> str:
    return query.replace('%s', '?')


class _TranslatingCursor:
    """Cursor wrapper accepting ``%s`` placeholders."""

    def __init__(self, cursor: sqlite3.Cursor):
        self._cursor = cursor

    def execute(self, query: str, params: Sequence = ()):
        return self._cursor.execute(_translate(query), tuple(params))

    def executemany(self, query: str, rows: Iterable[Sequence]):
        return self._cursor.executemany(_translate(query), [tuple(r) for r in rows])

    def __getattr__(self, name):
        return getattr(self._cursor, name)


class _TranslatingConnection:
    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def cursor(self) -> _TranslatingCursor:
        return _TranslatingCursor(self._conn.cursor())

    def __getattr__(self, name):
        return getattr(self._conn, name)


class SQLiteConnectionPool:
    """
    Single shared SQLite connection guarded by a re-entrant lock.

    Used for local runs (``DB_SQLITE_PATH``) and the test-suite.
    """

    dialect = 'sqlite'

    def __init__(self, path: str = ':memory:'):
        self.path = path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.execute('PRAGMA foreign_keys = ON')
        logger.info(f"SQLite store opened: {path}")

    @contextmanager
    def get_connection(self):
        """Yield a connection; commit on success, roll back on error."""
        with self._lock:
            wrapped = _TranslatingConnection(self._conn)
            try:
                yield wrapped
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                logger.error(f"Database error on {self.path}: {e}")
                raise StoreError(str(e)) from e
            except Exception:
                self._conn.rollback()
                raise

    def execute_batch(self, cur, query: str, rows: Iterable[Sequence], page_size: int = 1000) -> None:
        cur.executemany(query, rows)

    def close(self):
        self._conn.close()
        logger.info("SQLite store closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
