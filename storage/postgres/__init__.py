"""PostgreSQL-backed store."""
from .pool import PostgresConnectionPool
from .store import IngestStore

__all__ = [
    'PostgresConnectionPool',
    'IngestStore',
]
