"""
Series-aware facade over PolygonClient.

Maps (entity, series kind, window) to the right endpoint and walks its
pages.
"""
import logging
from typing import Any, Dict, Optional

from common.models.data_models import Entity, FetchWindow, PageResult, SeriesKind

from .aggregates_client import AggregatesClient
from .financials_client import FinancialsClient
from .news_client import NewsClient
from .polygon_client import PolygonClient
from .reference_client import ReferenceClient

logger = logging.getLogger(__name__)


class SyncClient:
    """Fetches windows for every series kind through one rate-limited client."""

    def __init__(self, client: PolygonClient):
        self.client = client
        self.reference = ReferenceClient(client)
        self.series = {
            SeriesKind.PRICE_HISTORY: AggregatesClient(client),
            SeriesKind.FUNDAMENTALS: FinancialsClient(client),
            SeriesKind.NEWS: NewsClient(client),
            SeriesKind.OVERVIEW: self.reference,
        }

    @staticmethod
    def _context(entity: Entity, window: FetchWindow) -> Dict[str, Any]:
        return {
            'symbol': entity.symbol,
            'entity_id': entity.id,
            'series_kind': window.series_kind.value,
            'resolution': window.resolution,
            'from': window.from_date.isoformat(),
            'to': window.to_date.isoformat(),
        }

    def fetch_page(self, entity: Entity, series_kind: SeriesKind, window: FetchWindow,
                   cursor: Optional[str] = None, max_retries: Optional[int] = None) -> PageResult:
        """
        Fetch one page of a window.

        Args:
            cursor: Opaque token (the upstream next_url) from a previous page
            max_retries: Retry bound for this run (client default when None)

        Returns:
            PageResult; ``next_cursor`` is None on the last page
        """
        if window.from_date > window.to_date:
            raise ValueError("window.from must not be after window.to")
        context = self._context(entity, window)
        if cursor:
            return self.client.fetch_page(cursor, context=context, max_retries=max_retries)
        endpoint, params = self.series[series_kind].build_request(entity, window)
        return self.client.fetch_page(endpoint, params, context=context, max_retries=max_retries)

    def fetch_window(self, entity: Entity, window: FetchWindow,
                     max_retries: Optional[int] = None) -> PageResult:
        """Fetch every page of a window; ``max_retries`` bounds 5xx/transport retries per page."""
        series = self.series[window.series_kind]
        endpoint, params = series.build_request(entity, window)
        return self.client.paginate(
            endpoint, params,
            context=self._context(entity, window),
            page_pause=series.page_pause,
            max_retries=max_retries,
        )

    def close(self):
        self.client.close()
