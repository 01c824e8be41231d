"""
Ticker overview repository.

One row per ticker per day, plus a refresh of the ticker's own attributes.
"""
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, Optional

from common.models.data_models import Entity, UpsertResult
from .fundamentals import to_number

logger = logging.getLogger(__name__)


class OverviewRepository:
    """Repository for daily ticker overview snapshots."""

    def __init__(self, pool):
        self.pool = pool

    def upsert_overview(self, entity: Entity, details: Optional[Dict[str, Any]],
                        overview_date: Optional[date] = None) -> UpsertResult:
        """Store the overview for ``overview_date`` (default today) and refresh ticker attributes."""
        if not details:
            return UpsertResult()
        if details.get('ticker') and details['ticker'] != entity.symbol:
            logger.warning(f"Overview ticker mismatch: expected {entity.symbol}, got {details['ticker']}")
            return UpsertResult(rejected=1)

        now = datetime.utcnow()
        overview_date = overview_date or now.date()
        employees = details.get('total_employees')

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO ticker_overviews
                (ticker_id, ticker, overview_date, name, market, type, active, primary_exchange,
                 market_cap, share_class_shares_outstanding, total_employees, list_date,
                 description, homepage_url, raw, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (ticker_id, overview_date) DO UPDATE SET
                    name = excluded.name,
                    market = excluded.market,
                    type = excluded.type,
                    active = excluded.active,
                    primary_exchange = excluded.primary_exchange,
                    market_cap = excluded.market_cap,
                    share_class_shares_outstanding = excluded.share_class_shares_outstanding,
                    total_employees = excluded.total_employees,
                    list_date = excluded.list_date,
                    description = excluded.description,
                    homepage_url = excluded.homepage_url,
                    raw = excluded.raw,
                    updated_at = excluded.updated_at
            """, (
                entity.id, entity.symbol, overview_date,
                details.get('name'), details.get('market'), details.get('type'),
                details.get('active'), details.get('primary_exchange'),
                to_number(details.get('market_cap')),
                to_number(details.get('share_class_shares_outstanding')),
                int(employees) if isinstance(employees, (int, float)) else None,
                details.get('list_date'), details.get('description'),
                details.get('homepage_url'), json.dumps(details), now, now,
            ))

            cur.execute("""
                UPDATE tickers SET
                    name = COALESCE(%s, name),
                    market = COALESCE(%s, market),
                    type = COALESCE(%s, type),
                    primary_exchange = COALESCE(%s, primary_exchange),
                    cik = COALESCE(%s, cik),
                    active = COALESCE(%s, active),
                    updated_at = %s
                WHERE id = %s
            """, (
                details.get('name'), details.get('market'), details.get('type'),
                details.get('primary_exchange'), details.get('cik'),
                details.get('active'), now, entity.id,
            ))

        logger.debug(f"Stored overview for {entity.symbol} ({overview_date})")
        return UpsertResult(accepted=1)
