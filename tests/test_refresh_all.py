"""Test the refresh-all step sequencing."""
from datetime import date

import pytest

from common.config.settings import SyncConfig
from common.models.data_models import Batch, BatchStatus, FetchOutcome, FetchWindow, SeriesKind, WorkUnit
from core.orchestrator.refresh_all import RefreshAllRunner, select_steps
from core.orchestrator.sync_run import RunSummary, UniverseSummary
from scraper.pipeline import DispatchMode, InMemoryWorkQueue
from conftest import RecordingLogger


class StubOrchestrator:
    """Records requests; ``fail`` names series kinds that raise."""

    def __init__(self, fail=(), failed_units=0, universe_outcome=FetchOutcome.OK, skipped=()):
        self.fail = set(fail)
        self.failed_units = failed_units
        self.universe_outcome = universe_outcome
        self.skipped = list(skipped)
        self.requests = []
        self.configs = []

    def sync_universe(self, market='stocks', active=True, max_pages=None):
        self.requests.append('tickers')
        return UniverseSummary(fetched=10, stored=10, outcome=self.universe_outcome,
                               error=None if self.universe_outcome == FetchOutcome.OK else 'HTTP 503')

    def run(self, request, config):
        self.requests.append(request)
        self.configs.append(config)
        if request.series_kind in self.fail:
            raise RuntimeError(f"{request.series_kind.value} exploded")
        batch = Batch(id='b1', name='x', total=2, pending=0, processed=2 - self.failed_units,
                      failed=self.failed_units, status=BatchStatus.COMPLETE)
        return RunSummary(series_kind=request.series_kind, mode=request.mode, planned_units=2, batches=[batch],
                          skipped=list(self.skipped))


class StepClock:
    def __init__(self):
        self.value = 0.0

    def __call__(self):
        return self.value

    def sleep(self, seconds):
        self.value += seconds


class TestSelectSteps:

    def test_modes(self):
        assert select_steps() == ['tickers', 'overviews', 'fundamentals', 'prices', 'news']
        assert select_steps(core=True) == ['tickers', 'overviews']
        assert select_steps(weekly=True) == ['fundamentals']
        assert select_steps(daily=True) == ['tickers', 'overviews', 'prices', 'news']


class TestRefreshAllRunner:

    def setup_method(self):
        self.obs = RecordingLogger()
        self.clock = StepClock()

    def runner(self, orchestrator, queue=None):
        return RefreshAllRunner(orchestrator, lambda kind: SyncConfig(batch_size=100, sleep_seconds=5),
                                queue=queue, obs=self.obs, sleep=self.clock.sleep, clock=self.clock)

    def test_steps_run_in_canonical_order(self):
        orchestrator = StubOrchestrator()

        report = self.runner(orchestrator).run(['news', 'tickers', 'prices'])

        assert [s.name for s in report.steps] == ['tickers', 'prices', 'news']
        kinds = [r.series_kind for r in orchestrator.requests if r != 'tickers']
        assert kinds == [SeriesKind.PRICE_HISTORY, SeriesKind.NEWS]
        assert report.ok

    def test_failed_step_does_not_stop_later_steps(self):
        orchestrator = StubOrchestrator(fail={SeriesKind.OVERVIEW})

        report = self.runner(orchestrator).run(select_steps())

        assert [s.name for s in report.steps] == ['tickers', 'overviews', 'fundamentals', 'prices', 'news']
        overviews = report.steps[1]
        assert not overviews.ok
        assert overviews.error == 'RuntimeError: overview exploded'
        assert all(s.ok for s in report.steps if s.name != 'overviews')
        assert not report.ok
        assert 'refresh_step_failed' in self.obs.messages('ERROR')
        assert any('FAILED' in line for line in report.lines())

    def test_unit_failures_and_universe_errors_mark_steps_failed(self):
        orchestrator = StubOrchestrator(failed_units=1, universe_outcome=FetchOutcome.RETRYABLE)

        report = self.runner(orchestrator).run(['tickers', 'news'])

        assert [s.ok for s in report.steps] == [False, False]
        assert report.steps[0].error == 'HTTP 503'
        assert '1 failed' in report.steps[1].detail

    def test_skipped_tickers_mark_the_step_failed(self):
        orchestrator = StubOrchestrator(skipped=['AAPL news/articles: span 9000d exceeds 7300d'])

        report = self.runner(orchestrator).run(['news'])

        assert not report.steps[0].ok
        assert report.steps[0].detail.endswith('0 failed, 0 pending, 1 skipped')

    def test_fundamentals_cover_every_timeframe(self):
        orchestrator = StubOrchestrator()

        self.runner(orchestrator).run(['fundamentals'], mode=DispatchMode.SYNC, symbols=['AAPL'], limit=5)

        request = orchestrator.requests[0]
        assert request.resolution == 'all'
        assert request.mode == DispatchMode.SYNC
        assert (request.symbols, request.limit) == (['AAPL'], 5)

    def test_fast_mode_doubles_batches_and_drops_pacing(self):
        orchestrator = StubOrchestrator()

        self.runner(orchestrator).run(['prices'], fast=True)

        config = orchestrator.configs[0]
        assert (config.batch_size, config.sleep_seconds) == (200, 0)

    def test_unknown_step_is_rejected(self):
        with pytest.raises(ValueError):
            self.runner(StubOrchestrator()).run(['prices', 'options'])

    def test_wait_for_drain_times_out(self):
        queue = InMemoryWorkQueue()
        orchestrator = StubOrchestrator()
        runner = self.runner(orchestrator, queue=queue)
        queue.enqueue(WorkUnit(window=FetchWindow(1, SeriesKind.NEWS, date(2024, 1, 1), date(2024, 1, 1))))

        report = runner.run(['news'], wait=True, wait_timeout=12)

        assert report.steps[0].detail.endswith('(queue not drained before timeout)')
        assert self.clock.value == 15
        assert 'refresh_wait_timeout' in self.obs.messages('WARN')

    def test_wait_for_drain_without_queue_returns_immediately(self):
        assert self.runner(StubOrchestrator()).wait_for_drain(10) is True
