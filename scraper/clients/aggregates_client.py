"""
Polygon.io Aggregates (OHLCV Bars) Client
Builds range requests for historical bars.
"""
import logging
from typing import Any, Dict, Tuple

from common.config.settings import RESOLUTION_CONFIGS
from common.models.data_models import Entity, FetchWindow

from .polygon_client import PolygonClient

logger = logging.getLogger(__name__)


class AggregatesClient:
    """
    Client for fetching aggregates (OHLCV bars) from Polygon.io.

    Endpoints:
    - /v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/{from}/{to}
    """

    page_pause = 0.0

    def __init__(self, client: PolygonClient):
        """
        Initialize aggregates client.

        Args:
            client: PolygonClient instance
        """
        self.client = client

    def build_request(self, entity: Entity, window: FetchWindow) -> Tuple[str, Dict[str, Any]]:
        """
        Endpoint and params for one window of bars.

        The symbol is used exactly as stored; Polygon treats ABRpD and ABRPD
        as different tickers.
        """
        if window.resolution not in RESOLUTION_CONFIGS:
            raise ValueError(f"Unsupported resolution: {window.resolution}")
        multiplier, timespan = RESOLUTION_CONFIGS[window.resolution]

        endpoint = (
            f"/v2/aggs/ticker/{entity.symbol}/range/{multiplier}/{timespan}/"
            f"{window.from_date.isoformat()}/{window.to_date.isoformat()}"
        )
        params = {
            'adjusted': 'true' if window.params.get('adjusted', True) else 'false',
            'sort': 'asc',
            'limit': int(window.params.get('limit', 50000)),
        }
        return endpoint, params
