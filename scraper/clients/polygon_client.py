"""
Polygon.io REST API Client
Base client with rate limiting, retry classification, and connection pooling.
"""
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
import time
import logging
from typing import Any, Callable, Dict, List, Optional
import threading

from common.models.data_models import FetchOutcome, PageResult
from scraper.utils.structured_logging import NullLogger, ObservabilityPort, safe_emit

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Thread-safe rate limiter using token bucket algorithm.
    """
    def __init__(self, requests_per_second: int = 5, sleep: Callable[[float], None] = time.sleep):
        """
        Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second (0 disables limiting)
            sleep: Sleep function (injectable for tests)
        """
        self.rate = requests_per_second
        self.tokens = float(requests_per_second)
        self.max_tokens = requests_per_second
        self.last_update = time.monotonic()
        self.lock = threading.Lock()
        self._sleep = sleep

    def acquire(self):
        """Acquire a token (blocks if necessary)"""
        if self.rate <= 0:
            return
        with self.lock:
            while self.tokens < 1:
                now = time.monotonic()
                elapsed = now - self.last_update
                self.tokens = min(self.tokens + elapsed * self.rate, self.max_tokens)
                self.last_update = now

                if self.tokens < 1:
                    self._sleep(0.1)

            self.tokens -= 1


class PolygonClient:
    """
    Polygon.io REST API base client.

    Retry policy per logical call:
    - 429: sleep for Retry-After (or the current backoff) and repeat, unbounded
    - 5xx / transport errors: up to ``max_retries`` retries, backoff doubling
    - other 4xx: terminal, no retry

    HTTP outcomes never raise; callers receive a PageResult whose outcome
    says whether the data is complete.
    """

    BASE_URL = "https://api.polygon.io"

    def __init__(self, api_key: str, base_url: Optional[str] = None, rate_limit: int = 5,
                 max_retries: int = 3, timeout: int = 30, max_connections: int = 50,
                 retry_base_seconds: float = 2.0, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 obs: Optional[ObservabilityPort] = None):
        """
        Initialize Polygon client.

        Args:
            api_key: Polygon.io API key
            base_url: API base URL (default: https://api.polygon.io)
            rate_limit: Requests per second (5 for free, 100 for professional)
            max_retries: Retries after the first attempt for 5xx/transport errors
            timeout: Request timeout in seconds
            max_connections: Maximum HTTP connections in pool
            retry_base_seconds: First backoff delay, doubled per retry
            session: Pre-built session (tests inject a fake)
            sleep: Sleep function used for backoff and 429 waits
            obs: Observability port for per-attempt events
        """
        self.api_key = api_key
        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.rate_limiter = RateLimiter(rate_limit, sleep=sleep)
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep
        self.obs = obs or NullLogger()

        if session is None:
            session = requests.Session()
            # Status-code retries are classified in _request; urllib3 only pools connections.
            adapter = HTTPAdapter(
                pool_connections=max_connections,
                pool_maxsize=max_connections,
                max_retries=Retry(total=0, raise_on_status=False),
                pool_block=True
            )
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session

        logger.info(f"Polygon client initialized: {rate_limit} req/s, {max_connections} max connections")

    def _retry_after(self, response, fallback: float) -> float:
        header = response.headers.get('Retry-After') if response.headers else None
        if header is None:
            return fallback
        try:
            return max(float(header), 0.0)
        except (TypeError, ValueError):
            return fallback

    def fetch_page(self, endpoint_or_url: str, params: Optional[Dict[str, Any]] = None,
                   context: Optional[Dict[str, Any]] = None,
                   max_retries: Optional[int] = None) -> PageResult:
        """
        Perform one logical GET with rate-limit handling and bounded retries.

        Args:
            endpoint_or_url: API path, or a full next_url returned by a previous page
            params: Query parameters (ignored for next_url, which carries its own)
            context: Entity/window fields attached to every log event
            max_retries: Per-call retry bound for 5xx/transport errors; the
                client default when None

        Returns:
            PageResult with records, next cursor and outcome
        """
        context = context or {}
        if endpoint_or_url.startswith('http'):
            url = endpoint_or_url
            query: Dict[str, Any] = {}
        else:
            url = f"{self.base_url}/{endpoint_or_url.lstrip('/')}"
            query = dict(params or {})
        query['apiKey'] = self.api_key

        retry_limit = self.max_retries if max_retries is None else max_retries
        errors = 0
        wait = self.retry_base_seconds
        rate_limited = 0

        while True:
            self.rate_limiter.acquire()
            attempt = errors + rate_limited + 1
            try:
                response = self.session.get(url, params=query, timeout=self.timeout)
            except requests.RequestException as e:
                errors += 1
                safe_emit(self.obs, 'warn', 'upstream_transport_error', attempt=attempt,
                          error=str(e), **context)
                if errors > retry_limit:
                    return self._give_up(FetchOutcome.RETRYABLE, None, str(e), attempt, context)
                self._sleep(wait)
                wait *= 2
                continue

            status = response.status_code

            if status == 429:
                rate_limited += 1
                delay = self._retry_after(response, wait)
                safe_emit(self.obs, 'warn', 'upstream_rate_limited', attempt=attempt,
                          retry_after=delay, **context)
                self._sleep(delay)
                continue

            if status >= 500:
                errors += 1
                safe_emit(self.obs, 'warn', 'upstream_server_error', attempt=attempt,
                          status=status, **context)
                if errors > retry_limit:
                    return self._give_up(FetchOutcome.RETRYABLE, status, f"HTTP {status}", attempt, context)
                self._sleep(wait)
                wait *= 2
                continue

            if status >= 400:
                body = (response.text or '')[:300]
                safe_emit(self.obs, 'warn', 'upstream_client_error', attempt=attempt,
                          status=status, body=body, **context)
                return PageResult(outcome=FetchOutcome.TERMINAL, status_code=status,
                                  error=f"HTTP {status}: {body}")

            try:
                payload = response.json()
            except ValueError as e:
                errors += 1
                safe_emit(self.obs, 'warn', 'upstream_invalid_json', attempt=attempt,
                          status=status, **context)
                if errors > retry_limit:
                    return self._give_up(FetchOutcome.RETRYABLE, status, f"invalid JSON: {e}", attempt, context)
                self._sleep(wait)
                wait *= 2
                continue

            records = self._extract_results(payload)
            next_cursor = payload.get('next_url') if isinstance(payload, dict) else None
            safe_emit(self.obs, 'debug', 'upstream_page_fetched', attempt=attempt, status=status,
                      records=len(records), has_next=bool(next_cursor), **context)
            return PageResult(records=records, next_cursor=next_cursor or None,
                              outcome=FetchOutcome.OK, status_code=status)

    def _give_up(self, outcome: FetchOutcome, status: Optional[int], error: str,
                 attempt: int, context: Dict[str, Any]) -> PageResult:
        safe_emit(self.obs, 'error', 'upstream_retries_exhausted', attempts=attempt,
                  status=status, error=error, **context)
        return PageResult(outcome=outcome, status_code=status, error=error)

    @staticmethod
    def _extract_results(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, dict):
            return []
        results = payload.get('results')
        if results is None:
            return []
        if isinstance(results, dict):
            return [results]
        return list(results)

    def paginate(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                 context: Optional[Dict[str, Any]] = None, page_pause: float = 0.0,
                 max_pages: Optional[int] = None, max_retries: Optional[int] = None) -> PageResult:
        """
        Follow next_url cursors until exhausted.

        Records gathered before a failing page are returned together with
        that page's failure outcome, so nothing fetched is dropped silently.

        Args:
            endpoint: API endpoint path
            params: Query parameters for the first page
            context: Log context
            page_pause: Seconds to wait between pages
            max_pages: Stop after this many pages (None for all)
            max_retries: Retry bound passed to every page fetch
        """
        all_records: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        pages = 0

        while True:
            page = self.fetch_page(cursor or endpoint, None if cursor else params, context,
                                  max_retries=max_retries)
            pages += 1
            all_records.extend(page.records)

            if page.outcome.is_failure:
                return PageResult(records=all_records, outcome=page.outcome,
                                  status_code=page.status_code, error=page.error, pages=pages)

            cursor = page.next_cursor
            if not cursor or not page.records or (max_pages and pages >= max_pages):
                return PageResult(records=all_records, next_cursor=cursor,
                                  outcome=FetchOutcome.OK, status_code=page.status_code, pages=pages)

            if page_pause:
                self._sleep(page_pause)

    def close(self):
        """Close the HTTP session"""
        self.session.close()
        logger.info("Closed Polygon client session")
