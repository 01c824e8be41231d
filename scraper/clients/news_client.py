"""
Polygon.io News Client
Fetches ticker news by publication window.
"""
import logging
from typing import Any, Dict, Tuple

from common.models.data_models import Entity, FetchWindow

from .polygon_client import PolygonClient

logger = logging.getLogger(__name__)


class NewsClient:
    """
    Client for fetching news articles from Polygon.io.

    Endpoints:
    - /v2/reference/news
    """

    page_pause = 0.0

    def __init__(self, client: PolygonClient):
        """
        Initialize news client.

        Args:
            client: PolygonClient instance
        """
        self.client = client

    def build_request(self, entity: Entity, window: FetchWindow) -> Tuple[str, Dict[str, Any]]:
        """Window days are inclusive, so the upper bound runs to the end of ``to``."""
        params = {
            'ticker': entity.symbol,
            'published_utc.gte': f"{window.from_date.isoformat()}T00:00:00Z",
            'published_utc.lte': f"{window.to_date.isoformat()}T23:59:59Z",
            'order': 'asc',
            'sort': 'published_utc',
            'limit': int(window.params.get('limit', 1000)),
        }
        return '/v2/reference/news', params
