"""Idempotent store facade delegating to specialized repositories."""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from common.config.settings import DatabaseConfig
from common.models.data_models import Entity, SeriesKind, UpsertResult

from .pool import PostgresConnectionPool
from .schema import SchemaManager
from .repositories.batches import BatchRepository
from .repositories.entities import EntityRepository
from .repositories.failed_units import FailedUnitRepository
from .repositories.fundamentals import FundamentalsRepository
from .repositories.news import NewsRepository
from .repositories.overviews import OverviewRepository
from .repositories.price_history import PriceHistoryRepository
from .repositories.watermarks import WatermarkRepository

logger = logging.getLogger(__name__)


class IngestStore:
    """
    Store facade - owns record and watermark persistence.

    Delegates to:
    - a connection pool (PostgreSQL in production, SQLite locally)
    - SchemaManager: DDL
    - one repository per record family plus engine state repositories
    """

    def __init__(self, pool, initialize_schema: bool = True):
        """
        Args:
            pool: PostgresConnectionPool or SQLiteConnectionPool
            initialize_schema: Create missing tables on startup
        """
        self.pool = pool
        self.schema_manager = SchemaManager(pool)
        self.entities = EntityRepository(pool)
        self.prices = PriceHistoryRepository(pool)
        self.fundamentals = FundamentalsRepository(pool)
        self.news = NewsRepository(pool)
        self.overviews = OverviewRepository(pool)
        self.watermarks = WatermarkRepository(pool)
        self.batches = BatchRepository(pool)
        self.failed_units = FailedUnitRepository(pool)

        if initialize_schema:
            self.schema_manager.initialize_schema()

    @classmethod
    def from_config(cls, config: DatabaseConfig, initialize_schema: bool = True,
                    max_conn: int = 20) -> 'IngestStore':
        """Build the store for the configured backend."""
        if config.use_sqlite:
            from storage.sqlite.pool import SQLiteConnectionPool
            pool = SQLiteConnectionPool(config.sqlite_path)
        else:
            pool = PostgresConnectionPool(config, max_conn=max_conn)
        return cls(pool, initialize_schema=initialize_schema)

    def get_connection(self):
        """Context manager for getting a connection from the pool."""
        return self.pool.get_connection()

    def upsert(self, entity: Entity, series_kind: SeriesKind, resolution: str,
               records: List[Dict[str, Any]], as_of: Optional[date] = None) -> UpsertResult:
        """
        Validate and upsert fetched records for one entity and series.

        Returns accepted (persisted) and rejected (dropped by validation)
        counts; an all-invalid page is not an error.
        """
        if series_kind == SeriesKind.PRICE_HISTORY:
            return self.prices.upsert_bars(entity, resolution, records)
        if series_kind == SeriesKind.FUNDAMENTALS:
            return self.fundamentals.upsert_filings(entity, records)
        if series_kind == SeriesKind.NEWS:
            return self.news.upsert_articles(entity, records)
        if series_kind == SeriesKind.OVERVIEW:
            result = UpsertResult()
            for details in records:
                result += self.overviews.upsert_overview(entity, details, as_of)
            return result
        raise ValueError(f"Unsupported series kind: {series_kind}")

    def get_watermark(self, entity_id: int, series_kind: SeriesKind, resolution: str) -> Optional[date]:
        return self.watermarks.get(entity_id, series_kind, resolution)

    def advance_watermark(self, entity_id: int, series_kind: SeriesKind, resolution: str,
                          to_date: date) -> date:
        """Monotonic advance; returns the watermark actually stored."""
        return self.watermarks.advance(entity_id, series_kind, resolution, to_date)

    def close(self):
        """Close all connections in the pool."""
        self.pool.close()
