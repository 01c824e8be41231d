"""Ticker universe repository (entity ids and case-sensitive symbols)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from common.errors import EntityNotFoundError
from common.models.data_models import Entity

logger = logging.getLogger(__name__)


class EntityRepository:
    """CRUD for the tickers table."""

    COLUMNS = "id, ticker, name, active"

    def __init__(self, pool):
        self.pool = pool

    def upsert_tickers(self, tickers: List[Dict]) -> int:
        """Insert or refresh tickers from a reference listing; returns rows written."""
        now = datetime.utcnow()
        rows = [
            (
                t['ticker'], t.get('name'), t.get('market'), t.get('locale'), t.get('type'),
                t.get('primary_exchange'), t.get('currency_name'), t.get('cik'),
                bool(t.get('active', True)), now, now,
            )
            for t in tickers
            if t.get('ticker')
        ]
        if not rows:
            return 0

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            self.pool.execute_batch(cur, """
                INSERT INTO tickers
                (ticker, name, market, locale, type, primary_exchange, currency_name, cik,
                 active, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (ticker) DO UPDATE SET
                    name = excluded.name,
                    market = excluded.market,
                    locale = excluded.locale,
                    type = excluded.type,
                    primary_exchange = excluded.primary_exchange,
                    currency_name = excluded.currency_name,
                    cik = excluded.cik,
                    active = excluded.active,
                    updated_at = excluded.updated_at
            """, rows)

        logger.info("Upserted %d tickers", len(rows))
        return len(rows)

    def add_ticker(self, symbol: str, name: Optional[str] = None, active: bool = True) -> Entity:
        """Add a single ticker (or refresh it) and return the stored entity."""
        self.upsert_tickers([{'ticker': symbol, 'name': name, 'active': active}])
        return self.get_by_symbol(symbol)

    def get(self, entity_id: int) -> Entity:
        """Resolve a ticker by id; raises EntityNotFoundError when absent."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {self.COLUMNS} FROM tickers WHERE id = %s", (entity_id,))
            row = cur.fetchone()
        if not row:
            raise EntityNotFoundError(entity_id)
        return Entity.from_db_row(row)

    def get_by_symbol(self, symbol: str) -> Entity:
        """Exact, case-sensitive symbol lookup."""
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {self.COLUMNS} FROM tickers WHERE ticker = %s", (symbol,))
            row = cur.fetchone()
        if not row:
            raise EntityNotFoundError(symbol)
        return Entity.from_db_row(row)

    def list_entities(self, symbols: Optional[List[str]] = None, active_only: bool = True,
                      limit: int = 0) -> List[Entity]:
        """List tickers ordered by id, optionally filtered to exact symbols."""
        query = f"SELECT {self.COLUMNS} FROM tickers"
        clauses = []
        params: list = []
        if active_only:
            clauses.append("active = %s")
            params.append(True)
        if symbols:
            clauses.append(f"ticker IN ({', '.join(['%s'] * len(symbols))})")
            params.extend(symbols)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        if limit and limit > 0:
            query += " LIMIT %s"
            params.append(limit)

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            return [Entity.from_db_row(row) for row in cur.fetchall()]
