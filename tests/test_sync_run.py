"""Test end-to-end sync runs over a fake upstream."""
from datetime import date
from urllib.parse import urlsplit

from common.config.settings import SyncConfig
from common.models.data_models import BatchStatus, FetchOutcome, SeriesKind
from core.orchestrator.sync_run import SyncOrchestrator, SyncRequest, expand_resolutions
from scraper.clients import SyncClient
from scraper.pipeline import (
    BatchDispatcher,
    BatchMonitor,
    DispatchMode,
    InMemoryWorkQueue,
    RangePlanner,
    WorkUnitExecutor,
)
from conftest import (
    FakeResponse,
    FakeSession,
    RecordingLogger,
    SleepRecorder,
    make_bar,
    make_client,
    new_store,
    ok,
)

TODAY = date(2024, 1, 10)


def polygon(url, params):
    """Route fake upstream calls by path."""
    path = urlsplit(url).path
    if path.startswith('/v2/aggs/ticker/BAD/'):
        return FakeResponse(404, {'status': 'NOT_FOUND'})
    if path.startswith('/v2/aggs/ticker/'):
        start = date.fromisoformat(path.rsplit('/', 2)[1])
        return ok([make_bar(start.year, start.month, start.day)])
    if path == '/v3/reference/tickers':
        if 'cursor' in url:
            return ok([{'ticker': 'NVDA', 'name': 'NVIDIA', 'active': True}])
        return ok([{'ticker': 'AAPL', 'name': 'Apple', 'active': True}],
                  next_url='https://api.polygon.io/v3/reference/tickers?cursor=p2')
    return ok([])


class ExplodingPlanner(RangePlanner):
    def plan_windows(self, entity, series_kind, config, **kwargs):
        if entity.symbol == 'MSFT':
            raise ValueError("corrupt watermark")
        return super().plan_windows(entity, series_kind, config, **kwargs)


class TestSyncOrchestrator:

    def setup_method(self):
        self.store = new_store()
        self.obs = RecordingLogger()
        self.sleep = SleepRecorder()
        self.session = FakeSession(handler=polygon)
        self.monitor = BatchMonitor(self.store, self.obs)
        self.queue = InMemoryWorkQueue()
        self.sync_client = SyncClient(make_client(self.session, self.sleep))
        executor = WorkUnitExecutor(self.store, self.sync_client, self.monitor, self.obs, tries=1, sleep=self.sleep)
        self.dispatcher = BatchDispatcher(self.monitor, queue=self.queue, executor=executor,
                                          obs=self.obs, sleep=self.sleep)
        for symbol in ('AAPL', 'MSFT'):
            self.store.entities.add_ticker(symbol)
        self.store.entities.add_ticker('OLD', active=False)
        self.config = SyncConfig(batch_size=2, sleep_seconds=0, window_days=5, redundancy_days=0,
                                 historical_floor=date(2024, 1, 1))

    def teardown_method(self):
        self.store.close()

    def orchestrator(self, planner_cls=RangePlanner):
        planner = planner_cls(self.store, obs=self.obs, today=lambda: TODAY)
        return SyncOrchestrator(self.store, planner, self.dispatcher, reference=self.sync_client.reference,
                                obs=self.obs, progress=False)

    def test_sync_run_brings_active_tickers_up_to_date(self):
        request = SyncRequest(series_kind=SeriesKind.PRICE_HISTORY, mode=DispatchMode.SYNC)

        summary = self.orchestrator().run(request, self.config)

        assert (summary.entities, summary.planned_units) == (2, 4)
        assert [b.name for b in summary.batches] == ['PolygonPriceHistory Batch #1', 'PolygonPriceHistory Batch #2']
        assert (summary.processed, summary.failed, summary.pending) == (4, 0, 0)
        assert not summary.has_failures
        for symbol in ('AAPL', 'MSFT'):
            entity = self.store.entities.get_by_symbol(symbol)
            assert self.store.get_watermark(entity.id, SeriesKind.PRICE_HISTORY, '1d') == TODAY
            assert self.store.prices.count_bars(entity.id, '1d') == 2
        assert 'sync_run_finished' in self.obs.messages('INFO')

    def test_second_run_only_touches_the_tail(self):
        request = SyncRequest(series_kind=SeriesKind.PRICE_HISTORY, mode=DispatchMode.SYNC)
        orchestrator = self.orchestrator()
        orchestrator.run(request, self.config)
        calls_before = len(self.session.calls)

        summary = orchestrator.run(request, self.config)

        assert summary.planned_units == 2
        new_paths = [urlsplit(c['url']).path for c in self.session.calls[calls_before:]]
        assert all(path.endswith('/2024-01-10/2024-01-10') for path in new_paths)

    def test_failing_ticker_is_isolated(self):
        self.store.entities.add_ticker('BAD')
        request = SyncRequest(series_kind=SeriesKind.PRICE_HISTORY, symbols=['AAPL', 'BAD'],
                              mode=DispatchMode.SYNC)

        summary = self.orchestrator().run(request, self.config.with_overrides(batch_size=10))

        assert (summary.processed, summary.failed) == (2, 2)
        assert summary.batches[0].status == BatchStatus.PARTIAL_FAILURE
        assert summary.has_failures
        bad = self.store.entities.get_by_symbol('BAD')
        assert self.store.get_watermark(bad.id, SeriesKind.PRICE_HISTORY, '1d') is None

    def test_missing_symbols_are_reported(self):
        request = SyncRequest(series_kind=SeriesKind.NEWS, symbols=['AAPL', 'NOPE'])

        summary = self.orchestrator().run(request, self.config)

        assert summary.missing_symbols == ['NOPE']
        assert summary.entities == 1
        assert 'entity_not_found' in self.obs.messages('WARN')
        assert any('Not found     : NOPE' in line for line in summary.lines())

    def test_planning_error_skips_only_that_ticker(self):
        request = SyncRequest(series_kind=SeriesKind.NEWS)

        summary = self.orchestrator(ExplodingPlanner).run(request, self.config)

        assert len(summary.planning_errors) == 1
        assert summary.planning_errors[0].startswith('MSFT/articles')
        assert summary.planned_units == 2
        assert self.queue.size() == 2
        assert summary.has_failures

    def test_span_beyond_safety_bound_skips_ticker_and_flags_run(self):
        aapl = self.store.entities.get_by_symbol('AAPL')
        self.store.advance_watermark(aapl.id, SeriesKind.NEWS, 'articles', date(2024, 1, 8))
        config = self.config.with_overrides(max_span_days=5)

        summary = self.orchestrator().run(SyncRequest(series_kind=SeriesKind.NEWS), config)

        assert summary.planned_units == 1
        assert summary.up_to_date == 0
        assert len(summary.skipped) == 1 and summary.skipped[0].startswith('MSFT news/articles')
        assert summary.has_failures
        assert any(line.startswith('Skipped') for line in summary.lines())

    def test_queued_fundamentals_fan_out_over_timeframes(self):
        request = SyncRequest(series_kind=SeriesKind.FUNDAMENTALS, symbols=['AAPL'], resolution='all')
        config = self.config.with_overrides(window_days=365, batch_size=10)

        summary = self.orchestrator().run(request, config)

        queued = [self.queue.dequeue() for _ in range(self.queue.size())]
        assert sorted(u.window.resolution for u in queued) == ['annual', 'quarterly', 'ttm']
        assert summary.batches[0].name == 'PolygonFundamentals Batch #1'
        assert summary.batches[0].status == BatchStatus.RUNNING
        assert summary.pending == 3

    def test_up_to_date_entities_create_no_batches(self):
        for symbol in ('AAPL', 'MSFT'):
            entity = self.store.entities.get_by_symbol(symbol)
            self.store.advance_watermark(entity.id, SeriesKind.NEWS, 'articles', date(2024, 1, 20))

        summary = self.orchestrator().run(SyncRequest(series_kind=SeriesKind.NEWS), self.config)

        assert (summary.up_to_date, summary.planned_units, summary.batches) == (2, 0, [])

    def test_include_inactive_and_limit(self):
        request = SyncRequest(series_kind=SeriesKind.NEWS, include_inactive=True, limit=3)
        summary = self.orchestrator().run(request, self.config)
        assert summary.entities == 3

        request = SyncRequest(series_kind=SeriesKind.NEWS, limit=1)
        assert self.orchestrator().run(request, self.config).entities == 1

    def test_universe_sync_follows_cursor(self):
        universe = self.orchestrator().sync_universe()

        assert (universe.fetched, universe.stored, universe.outcome) == (2, 2, FetchOutcome.OK)
        assert self.store.entities.get_by_symbol('NVDA').name == 'NVIDIA'

    def test_expand_resolutions(self):
        assert expand_resolutions(SeriesKind.FUNDAMENTALS, 'all') == ['quarterly', 'annual', 'ttm']
        assert expand_resolutions(SeriesKind.PRICE_HISTORY, None) == ['1d']
        assert expand_resolutions(SeriesKind.OVERVIEW, None) == ['snapshot']
