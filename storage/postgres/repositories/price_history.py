"""
Price history repository.

Sanitizes and upserts aggregate bars into ticker_price_histories.
"""
import json
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from common.models.data_models import Entity, UpsertResult

logger = logging.getLogger(__name__)

# Price fields checked against the sanity band; volume is not price-like.
PRICE_FIELDS = ('o', 'h', 'l', 'c', 'vw')
PRICE_MIN = 0.0001
PRICE_MAX = 10_000_000


def validate_bar(bar: Dict[str, Any]) -> Optional[str]:
    """
    Return the reason a bar must be dropped, or None when it is usable.

    Upstream occasionally returns prices off by orders of magnitude; those
    bars are rejected instead of poisoning the series.
    """
    if not bar.get('t'):
        return 'missing_timestamp'

    for field in PRICE_FIELDS:
        if field not in bar:
            continue
        try:
            value = float(bar[field])
        except (TypeError, ValueError):
            return f'non_numeric_{field}'
        if not math.isfinite(value) or value < PRICE_MIN or value > PRICE_MAX:
            return f'out_of_range_{field}'
    return None


def bar_timestamp(bar: Dict[str, Any]) -> datetime:
    """Polygon bar timestamps are epoch milliseconds UTC; stored naive UTC."""
    return datetime.fromtimestamp(int(bar['t']) / 1000.0, tz=timezone.utc).replace(tzinfo=None)


class PriceHistoryRepository:
    """
    Repository for OHLCV bars.

    Responsibilities:
    - Drop bars with missing timestamps or absurd price values
    - Upsert by (ticker_id, resolution, t), overwriting value columns only
    """

    def __init__(self, pool):
        """
        Args:
            pool: PostgresConnectionPool or SQLiteConnectionPool instance
        """
        self.pool = pool

    def map_bars(self, entity: Entity, resolution: str, bars: List[Dict]) -> Tuple[List[tuple], int]:
        """Map raw bars to row tuples; returns (rows, rejected_count)."""
        now = datetime.utcnow()
        rows = []
        rejected = 0

        for bar in bars:
            reason = validate_bar(bar)
            if reason:
                rejected += 1
                logger.debug(f"Skipping bar for {entity.symbol} at {bar.get('t')}: {reason}")
                continue

            ts = bar_timestamp(bar)
            rows.append((
                entity.id,
                entity.symbol,
                resolution,
                ts,
                ts.year,
                bar.get('o'),
                bar.get('h'),
                bar.get('l'),
                bar.get('c'),
                int(bar['v']) if bar.get('v') is not None else None,
                bar.get('vw'),
                json.dumps(bar),
                now,
                now,
            ))

        return rows, rejected

    def upsert_bars(self, entity: Entity, resolution: str, bars: List[Dict]) -> UpsertResult:
        """
        Write bars for one ticker and resolution.

        Returns:
            UpsertResult with accepted (written) and rejected (invalid) counts
        """
        if not bars:
            return UpsertResult()

        rows, rejected = self.map_bars(entity, resolution, bars)
        if rejected:
            logger.warning(f"Dropped {rejected} invalid bars for {entity.symbol} ({resolution})")
        if not rows:
            return UpsertResult(accepted=0, rejected=rejected)

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            self.pool.execute_batch(cur, """
                INSERT INTO ticker_price_histories
                (ticker_id, ticker, resolution, t, year, o, h, l, c, v, vw, raw, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (ticker_id, resolution, t) DO UPDATE SET
                    o = excluded.o,
                    h = excluded.h,
                    l = excluded.l,
                    c = excluded.c,
                    v = excluded.v,
                    vw = excluded.vw,
                    raw = excluded.raw,
                    updated_at = excluded.updated_at
            """, rows)

        logger.debug(f"Upserted {len(rows)} bars for {entity.symbol} ({resolution})")
        return UpsertResult(accepted=len(rows), rejected=rejected)

    def count_bars(self, entity_id: int, resolution: str) -> int:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                "SELECT COUNT(*) FROM ticker_price_histories WHERE ticker_id = %s AND resolution = %s",
                (entity_id, resolution),
            )
            return int(cur.fetchone()[0])
