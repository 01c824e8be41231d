"""
Polygon.io Reference Data Client
Fetches the ticker universe and per-ticker overviews.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from common.models.data_models import Entity, FetchWindow, PageResult

from .polygon_client import PolygonClient

logger = logging.getLogger(__name__)


class ReferenceClient:
    """
    Client for fetching reference data from Polygon.io.

    Endpoints:
    - /v3/reference/tickers
    - /v3/reference/tickers/{ticker}
    """

    page_pause = 0.0

    def __init__(self, client: PolygonClient):
        """
        Initialize reference client.

        Args:
            client: PolygonClient instance
        """
        self.client = client

    def build_request(self, entity: Entity, window: FetchWindow) -> Tuple[str, Dict[str, Any]]:
        """Overview request; the window only records which day the snapshot belongs to."""
        return f"/v3/reference/tickers/{entity.symbol}", {}

    def list_tickers(self, market: str = 'stocks', active: Optional[bool] = True,
                     ticker_type: Optional[str] = None, limit: int = 1000,
                     max_pages: Optional[int] = None) -> PageResult:
        """
        Get the ticker universe.

        Args:
            market: Filter by market ('stocks', 'crypto', 'fx')
            active: Only active tickers (None for both)
            ticker_type: Filter by ticker type (CS, ETF, ...)
            limit: Results per page (max 1000)
            max_pages: Stop after this many pages

        Returns:
            PageResult with ticker dictionaries
        """
        params: Dict[str, Any] = {'market': market, 'limit': limit}
        if active is not None:
            params['active'] = 'true' if active else 'false'
        if ticker_type:
            params['type'] = ticker_type

        result = self.client.paginate("/v3/reference/tickers", params,
                                      context={'market': market}, max_pages=max_pages)
        logger.debug(f"Fetched {len(result.records)} tickers ({market})")
        return result
