"""Watermark repository: latest synced date per (ticker, series, resolution)."""
import logging
from datetime import date, datetime
from typing import List, Optional

from common.models.data_models import SeriesKind, Watermark, coerce_date

logger = logging.getLogger(__name__)


class WatermarkRepository:
    """
    Reads and advances sync watermarks.

    Advancement is a conditional upsert: the stored value only ever moves
    forward, so concurrent or out-of-order workers cannot rewind it.
    """

    def __init__(self, pool):
        self.pool = pool

    def get(self, entity_id: int, series_kind: SeriesKind, resolution: str) -> Optional[date]:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT watermark FROM sync_watermarks
                WHERE ticker_id = %s AND series_kind = %s AND resolution = %s
            """, (entity_id, series_kind.value, resolution))
            row = cur.fetchone()
        return coerce_date(row[0]) if row else None

    def advance(self, entity_id: int, series_kind: SeriesKind, resolution: str, to_date: date) -> date:
        """Move the watermark to ``to_date`` unless it is already later; returns the stored value."""
        now = datetime.utcnow()
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO sync_watermarks
                (ticker_id, series_kind, resolution, watermark, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (ticker_id, series_kind, resolution) DO UPDATE SET
                    watermark = excluded.watermark,
                    updated_at = excluded.updated_at
                WHERE excluded.watermark > sync_watermarks.watermark
            """, (entity_id, series_kind.value, resolution, to_date, now, now))
            cur.execute("""
                SELECT watermark FROM sync_watermarks
                WHERE ticker_id = %s AND series_kind = %s AND resolution = %s
            """, (entity_id, series_kind.value, resolution))
            stored = coerce_date(cur.fetchone()[0])

        if stored != to_date:
            logger.debug(
                "Watermark for %s/%s/%s kept at %s (offered %s)",
                entity_id, series_kind.value, resolution, stored, to_date,
            )
        return stored

    def list_for_entity(self, entity_id: int) -> List[Watermark]:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT ticker_id, series_kind, resolution, watermark, updated_at
                FROM sync_watermarks WHERE ticker_id = %s
                ORDER BY series_kind, resolution
            """, (entity_id,))
            return [Watermark.from_db_row(row) for row in cur.fetchall()]
