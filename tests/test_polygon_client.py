"""Test upstream client retry classification and pagination."""
from datetime import date

import requests

from common.models.data_models import Entity, FetchOutcome, FetchWindow, SeriesKind
from scraper.clients import RateLimiter, SyncClient
from conftest import (
    BrokenLogger,
    FakeResponse,
    FakeSession,
    RecordingLogger,
    SleepRecorder,
    make_bar,
    make_client,
    ok,
)


class TestFetchPage:
    """Retry policy of a single logical call."""

    def setup_method(self):
        self.sleep = SleepRecorder()
        self.obs = RecordingLogger()

    def test_success_returns_records_and_sends_api_key(self):
        session = FakeSession([ok([{'t': 1}, {'t': 2}], next_url='https://api.polygon.io/next?cursor=abc')])
        client = make_client(session, self.sleep, self.obs)

        page = client.fetch_page('/v2/aggs/ticker/AAPL/range/1/day/2024-01-01/2024-01-31', {'limit': 10})

        assert page.outcome == FetchOutcome.OK
        assert len(page.records) == 2
        assert page.next_cursor == 'https://api.polygon.io/next?cursor=abc'
        assert session.calls[0]['params'] == {'limit': 10, 'apiKey': 'test-key'}
        assert session.calls[0]['url'].startswith('https://api.polygon.io/v2/aggs/ticker/AAPL')
        assert self.sleep.calls == []

    def test_rate_limited_waits_retry_after_and_is_not_an_error(self):
        session = FakeSession([
            FakeResponse(429, headers={'Retry-After': '7'}),
            FakeResponse(429, headers={'Retry-After': '7'}),
            FakeResponse(429, headers={'Retry-After': '7'}),
            ok([{'t': 1}]),
        ])
        client = make_client(session, self.sleep, self.obs, max_retries=0)

        page = client.fetch_page('/v3/reference/tickers/AAPL')

        assert page.outcome == FetchOutcome.OK
        assert self.sleep.calls == [7.0, 7.0, 7.0]
        assert self.obs.messages('WARN').count('upstream_rate_limited') == 3

    def test_rate_limited_without_header_uses_current_wait(self):
        session = FakeSession([FakeResponse(429), ok([])])
        client = make_client(session, self.sleep)

        page = client.fetch_page('/v2/reference/news')

        assert page.outcome == FetchOutcome.OK
        assert self.sleep.calls == [2.0]

    def test_server_errors_exhaust_to_retryable(self):
        session = FakeSession([FakeResponse(503)] * 4)
        client = make_client(session, self.sleep, self.obs, max_retries=3)

        page = client.fetch_page('/vX/reference/financials')

        assert page.outcome == FetchOutcome.RETRYABLE
        assert page.status_code == 503
        assert page.records == []
        assert len(session.calls) == 4
        assert self.sleep.calls == [2.0, 4.0, 8.0]
        assert 'upstream_retries_exhausted' in self.obs.messages('ERROR')

    def test_call_retry_bound_overrides_client_default(self):
        session = FakeSession([FakeResponse(503)] * 4)
        client = make_client(session, self.sleep, self.obs, max_retries=3)

        page = client.fetch_page('/vX/reference/financials', max_retries=0)

        assert page.outcome == FetchOutcome.RETRYABLE
        assert len(session.calls) == 1
        assert self.sleep.calls == []

    def test_server_error_then_success(self):
        session = FakeSession([FakeResponse(500), ok([{'id': 'x'}])])
        client = make_client(session, self.sleep)

        page = client.fetch_page('/v2/reference/news')

        assert page.outcome == FetchOutcome.OK
        assert page.records == [{'id': 'x'}]
        assert self.sleep.calls == [2.0]

    def test_client_error_is_terminal_without_retry(self):
        session = FakeSession([FakeResponse(404, {'status': 'NOT_FOUND'})])
        client = make_client(session, self.sleep, self.obs)

        page = client.fetch_page('/v3/reference/tickers/NOPE')

        assert page.outcome == FetchOutcome.TERMINAL
        assert page.status_code == 404
        assert page.records == []
        assert len(session.calls) == 1
        assert self.sleep.calls == []

    def test_transport_errors_are_retried(self):
        session = FakeSession([requests.ConnectionError("reset"), requests.Timeout("slow"), ok([{'t': 1}])])
        client = make_client(session, self.sleep)

        page = client.fetch_page('/v2/reference/news')

        assert page.outcome == FetchOutcome.OK
        assert self.sleep.calls == [2.0, 4.0]

    def test_invalid_json_counts_as_retryable(self):
        session = FakeSession([FakeResponse(200, FakeResponse.INVALID_JSON)] * 2)
        client = make_client(session, self.sleep, max_retries=1)

        page = client.fetch_page('/v2/reference/news')

        assert page.outcome == FetchOutcome.RETRYABLE
        assert len(session.calls) == 2

    def test_single_object_results_are_wrapped(self):
        session = FakeSession([FakeResponse(200, {'results': {'ticker': 'AAPL'}})])
        client = make_client(session, self.sleep)

        page = client.fetch_page('/v3/reference/tickers/AAPL')

        assert page.records == [{'ticker': 'AAPL'}]

    def test_broken_log_sink_does_not_change_result(self):
        session = FakeSession([FakeResponse(500), ok([{'t': 1}])])
        client = make_client(session, self.sleep, BrokenLogger())

        page = client.fetch_page('/v2/reference/news')

        assert page.outcome == FetchOutcome.OK
        assert page.records == [{'t': 1}]


class TestPaginate:
    """Cursor walking."""

    def setup_method(self):
        self.sleep = SleepRecorder()

    def test_follows_next_url_verbatim(self):
        next_url = 'https://api.polygon.io/v2/reference/news?cursor=page2'
        session = FakeSession([ok([{'id': 1}], next_url=next_url), ok([{'id': 2}])])
        client = make_client(session, self.sleep)

        result = client.paginate('/v2/reference/news', {'ticker': 'AAPL'})

        assert result.outcome == FetchOutcome.OK
        assert [r['id'] for r in result.records] == [1, 2]
        assert result.pages == 2
        assert session.calls[1]['url'] == next_url
        # Only the key is added to a cursor URL
        assert session.calls[1]['params'] == {'apiKey': 'test-key'}

    def test_failure_mid_walk_keeps_earlier_records(self):
        session = FakeSession([
            ok([{'id': 1}, {'id': 2}], next_url='https://api.polygon.io/v2/reference/news?cursor=2'),
            FakeResponse(500), FakeResponse(500),
        ])
        client = make_client(session, self.sleep, max_retries=1)

        result = client.paginate('/v2/reference/news', {'ticker': 'AAPL'})

        assert result.outcome == FetchOutcome.RETRYABLE
        assert [r['id'] for r in result.records] == [1, 2]

    def test_empty_page_stops_walk(self):
        session = FakeSession([ok([], next_url='https://api.polygon.io/v2/reference/news?cursor=loop')])
        client = make_client(session, self.sleep)

        result = client.paginate('/v2/reference/news')

        assert result.outcome == FetchOutcome.OK
        assert result.records == []
        assert len(session.calls) == 1

    def test_max_pages_and_page_pause(self):
        session = FakeSession([
            ok([{'id': 1}], next_url='https://api.polygon.io/x?cursor=2'),
            ok([{'id': 2}], next_url='https://api.polygon.io/x?cursor=3'),
        ])
        client = make_client(session, self.sleep)

        result = client.paginate('/x', page_pause=0.25, max_pages=2)

        assert len(result.records) == 2
        assert result.next_cursor == 'https://api.polygon.io/x?cursor=3'
        assert self.sleep.calls == [0.25]


class TestSyncClient:
    """Series dispatch to endpoints."""

    def setup_method(self):
        self.entity = Entity(id=1, symbol='ABRpD')

    def test_price_window_endpoint_keeps_symbol_case(self):
        session = FakeSession([ok([make_bar(2024, 1, 2)])])
        sync = SyncClient(make_client(session))
        window = FetchWindow(1, SeriesKind.PRICE_HISTORY, date(2024, 1, 1), date(2024, 1, 31), '1d')

        result = sync.fetch_window(self.entity, window)

        assert result.outcome == FetchOutcome.OK
        assert session.paths() == ['/v2/aggs/ticker/ABRpD/range/1/day/2024-01-01/2024-01-31']
        assert session.calls[0]['params']['sort'] == 'asc'
        assert session.calls[0]['params']['adjusted'] == 'true'

    def test_fundamentals_window_uses_filing_dates_and_timeframe(self):
        session = FakeSession([ok([])])
        sync = SyncClient(make_client(session))
        window = FetchWindow(1, SeriesKind.FUNDAMENTALS, date(2023, 1, 1), date(2023, 12, 31), 'annual')

        sync.fetch_window(self.entity, window)

        params = session.calls[0]['params']
        assert session.paths() == ['/vX/reference/financials']
        assert params['timeframe'] == 'annual'
        assert params['filing_date.gte'] == '2023-01-01'
        assert params['filing_date.lte'] == '2023-12-31'
        assert params['limit'] == 100

    def test_explicit_financial_filters_pass_through(self):
        session = FakeSession([ok([])])
        sync = SyncClient(make_client(session))
        window = FetchWindow(1, SeriesKind.FUNDAMENTALS, date(2023, 1, 2), date(2026, 1, 1), 'quarterly',
                             params={'filters': {'filing_date.gt': '2023-01-01'}, 'limit': 500})

        sync.fetch_window(self.entity, window)

        params = session.calls[0]['params']
        assert params['filing_date.gt'] == '2023-01-01'
        assert 'filing_date.gte' not in params
        assert params['limit'] == 100

    def test_news_window_covers_whole_days(self):
        session = FakeSession([ok([])])
        sync = SyncClient(make_client(session))
        window = FetchWindow(1, SeriesKind.NEWS, date(2024, 6, 1), date(2024, 6, 30), 'articles')

        sync.fetch_window(self.entity, window)

        params = session.calls[0]['params']
        assert params['published_utc.gte'] == '2024-06-01T00:00:00Z'
        assert params['published_utc.lte'] == '2024-06-30T23:59:59Z'
        assert params['ticker'] == 'ABRpD'

    def test_window_retry_bound_applies_to_every_page(self):
        session = FakeSession([
            ok([make_bar(2024, 1, 2)], next_url='https://api.polygon.io/v2/aggs/ticker/ABRpD/range?cursor=2'),
            FakeResponse(502), FakeResponse(502), FakeResponse(502),
        ])
        sleep = SleepRecorder()
        sync = SyncClient(make_client(session, sleep, max_retries=3))
        window = FetchWindow(1, SeriesKind.PRICE_HISTORY, date(2024, 1, 1), date(2024, 1, 31), '1d')

        result = sync.fetch_window(self.entity, window, max_retries=1)

        assert result.outcome == FetchOutcome.RETRYABLE
        assert len(result.records) == 1
        assert len(session.calls) == 3
        assert sleep.calls == [2.0]

    def test_fetch_page_with_cursor(self):
        cursor = 'https://api.polygon.io/v2/reference/news?cursor=xyz'
        session = FakeSession([ok([{'id': 'n1'}])])
        sync = SyncClient(make_client(session))
        window = FetchWindow(1, SeriesKind.NEWS, date(2024, 6, 1), date(2024, 6, 2), 'articles')

        page = sync.fetch_page(self.entity, SeriesKind.NEWS, window, cursor=cursor)

        assert page.records == [{'id': 'n1'}]
        assert session.calls[0]['url'] == cursor


class TestRateLimiter:

    def test_zero_rate_never_sleeps(self):
        sleep = SleepRecorder()
        limiter = RateLimiter(0, sleep=sleep)
        for _ in range(100):
            limiter.acquire()
        assert sleep.calls == []

    def test_burst_within_bucket_does_not_sleep(self):
        sleep = SleepRecorder()
        limiter = RateLimiter(5, sleep=sleep)
        for _ in range(5):
            limiter.acquire()
        assert sleep.calls == []
