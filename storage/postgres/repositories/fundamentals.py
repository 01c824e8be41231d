"""
Fundamentals repository.

Stores one topline row per filing period and one row per statement line
item, both keyed by natural period keys.
"""
import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from common.models.data_models import Entity, UpsertResult

logger = logging.getLogger(__name__)

STATEMENTS = ('balance_sheet', 'income_statement', 'cash_flow_statement', 'comprehensive_income')

# topline column -> (statement, line item)
TOPLINE_FIELDS = {
    'total_assets': ('balance_sheet', 'assets'),
    'total_liabilities': ('balance_sheet', 'liabilities'),
    'equity': ('balance_sheet', 'equity'),
    'net_income': ('income_statement', 'net_income_loss'),
    'revenue': ('income_statement', 'revenues'),
    'operating_income': ('income_statement', 'operating_income_loss'),
    'gross_profit': ('income_statement', 'gross_profit'),
    'eps_basic': ('income_statement', 'basic_earnings_per_share'),
    'eps_diluted': ('income_statement', 'diluted_earnings_per_share'),
}


def to_number(value: Any, digits: Optional[int] = None) -> Optional[float]:
    """Coerce upstream numerics; non-finite or non-numeric values become None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return round(number, digits) if digits is not None else number


def _line_value(financials: Dict[str, Any], statement: str, item: str) -> Any:
    node = (financials.get(statement) or {}).get(item) or {}
    return node.get('value') if isinstance(node, dict) else None


class FundamentalsRepository:
    """Repository for financial filings and their line items."""

    def __init__(self, pool):
        self.pool = pool

    def upsert_filings(self, entity: Entity, items: List[Dict[str, Any]]) -> UpsertResult:
        """
        Upsert filings for a ticker.

        Filings without end_date, fiscal_period or fiscal_year cannot be keyed
        and are rejected.
        """
        if not items:
            return UpsertResult()

        now = datetime.utcnow()
        toplines = []
        metrics = []
        rejected = 0

        for item in items:
            end_date = item.get('end_date')
            period = item.get('fiscal_period')
            year = item.get('fiscal_year')
            if not end_date or not period or not year:
                rejected += 1
                continue

            financials = item.get('financials') or {}
            values = {
                column: to_number(
                    _line_value(financials, statement, line),
                    4 if column.startswith('eps_') else None,
                )
                for column, (statement, line) in TOPLINE_FIELDS.items()
            }

            toplines.append((
                entity.id, entity.symbol, end_date, period, str(year),
                item.get('cik'), item.get('company_name'), item.get('timeframe'),
                item.get('status'), item.get('start_date'), item.get('filing_date'),
                item.get('source_filing_url'),
                values['total_assets'], values['total_liabilities'], values['equity'],
                values['net_income'], values['revenue'], values['operating_income'],
                values['gross_profit'], values['eps_basic'], values['eps_diluted'],
                json.dumps(item), now, now, now,
            ))

            for statement in STATEMENTS:
                section = financials.get(statement) or {}
                for line_item, node in section.items():
                    if not isinstance(node, dict):
                        continue
                    metrics.append((
                        entity.id, entity.symbol, end_date, period, str(year),
                        statement, line_item, node.get('label'), node.get('unit'),
                        node.get('order'), to_number(node.get('value')), now, now,
                    ))

        if not toplines:
            return UpsertResult(accepted=0, rejected=rejected)

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            self.pool.execute_batch(cur, """
                INSERT INTO ticker_fundamentals
                (ticker_id, ticker, end_date, fiscal_period, fiscal_year, cik, company_name,
                 timeframe, status, start_date, filing_date, source_filing_url,
                 total_assets, total_liabilities, equity, net_income, revenue,
                 operating_income, gross_profit, eps_basic, eps_diluted,
                 raw, fetched_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                        %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (ticker_id, end_date, fiscal_period, fiscal_year) DO UPDATE SET
                    cik = excluded.cik,
                    company_name = excluded.company_name,
                    timeframe = excluded.timeframe,
                    status = excluded.status,
                    start_date = excluded.start_date,
                    filing_date = excluded.filing_date,
                    source_filing_url = excluded.source_filing_url,
                    total_assets = excluded.total_assets,
                    total_liabilities = excluded.total_liabilities,
                    equity = excluded.equity,
                    net_income = excluded.net_income,
                    revenue = excluded.revenue,
                    operating_income = excluded.operating_income,
                    gross_profit = excluded.gross_profit,
                    eps_basic = excluded.eps_basic,
                    eps_diluted = excluded.eps_diluted,
                    raw = excluded.raw,
                    fetched_at = excluded.fetched_at,
                    updated_at = excluded.updated_at
            """, toplines)

            if metrics:
                self.pool.execute_batch(cur, """
                    INSERT INTO ticker_fundamental_metrics
                    (ticker_id, ticker, end_date, fiscal_period, fiscal_year, statement,
                     line_item, label, unit, display_order, value, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (ticker_id, end_date, fiscal_period, statement, line_item) DO UPDATE SET
                        fiscal_year = excluded.fiscal_year,
                        label = excluded.label,
                        unit = excluded.unit,
                        display_order = excluded.display_order,
                        value = excluded.value,
                        updated_at = excluded.updated_at
                """, metrics)

        logger.debug(f"Upserted {len(toplines)} filings / {len(metrics)} line items for {entity.symbol}")
        return UpsertResult(accepted=len(toplines), rejected=rejected)
