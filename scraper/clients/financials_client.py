"""
Polygon.io Financials Client
Fetches quarterly/annual/TTM filings by filing date range.
"""
import logging
from typing import Any, Dict, Tuple

from common.config.settings import FUNDAMENTAL_TIMEFRAMES
from common.models.data_models import Entity, FetchWindow

from .polygon_client import PolygonClient

logger = logging.getLogger(__name__)

FILING_DATE_FILTERS = ('filing_date.gte', 'filing_date.gt', 'filing_date.lte', 'filing_date.lt')


class FinancialsClient:
    """
    Client for the experimental financials endpoint.

    Endpoints:
    - /vX/reference/financials
    """

    MAX_LIMIT = 100
    # Pause between pages; the financials endpoint throttles bursts
    page_pause = 0.25

    def __init__(self, client: PolygonClient):
        self.client = client

    def build_request(self, entity: Entity, window: FetchWindow) -> Tuple[str, Dict[str, Any]]:
        """
        Explicit filing-date filters in ``window.params['filters']`` are sent
        untouched; otherwise the window bounds become gte/lte.
        """
        order = str(window.params.get('order', 'asc')).lower()
        if order not in ('asc', 'desc'):
            order = 'asc'

        params: Dict[str, Any] = {
            'ticker': entity.symbol,
            'limit': max(1, min(int(window.params.get('limit', self.MAX_LIMIT)), self.MAX_LIMIT)),
            'order': order,
            'timeframe': window.params.get('timeframe', self._default_timeframe(window)),
            'sort': 'filing_date',
        }

        filters = window.params.get('filters') or {}
        explicit = {k: v for k, v in filters.items() if k in FILING_DATE_FILTERS and v}
        if explicit:
            params.update(explicit)
        else:
            params['filing_date.gte'] = window.from_date.isoformat()
            params['filing_date.lte'] = window.to_date.isoformat()

        return '/vX/reference/financials', params

    @staticmethod
    def _default_timeframe(window: FetchWindow) -> str:
        # Fundamentals windows carry the timeframe as their resolution
        if window.resolution in FUNDAMENTAL_TIMEFRAMES:
            return window.resolution
        return 'quarterly'
