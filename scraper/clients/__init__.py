"""
Polygon.io API clients
"""
from .polygon_client import PolygonClient, RateLimiter
from .aggregates_client import AggregatesClient
from .financials_client import FinancialsClient
from .reference_client import ReferenceClient
from .news_client import NewsClient
from .sync_client import SyncClient

__all__ = [
    'PolygonClient',
    'RateLimiter',
    'AggregatesClient',
    'FinancialsClient',
    'ReferenceClient',
    'NewsClient',
    'SyncClient'
]
