"""Test batch dispatch, naming, pacing and failure isolation."""
from datetime import date

import pytest

from common.config.settings import SyncConfig
from common.errors import QueueError
from common.models.data_models import (
    BatchStatus,
    FetchOutcome,
    FetchWindow,
    PageResult,
    SeriesKind,
    WorkUnit,
)
from scraper.clients import SyncClient
from scraper.pipeline import (
    BatchDispatcher,
    BatchMonitor,
    DispatchMode,
    InMemoryWorkQueue,
    WorkUnitExecutor,
)
from conftest import (
    FakeResponse,
    FakeSession,
    RecordingLogger,
    SleepRecorder,
    StubSyncClient,
    break_watermarks,
    make_bar,
    make_client,
    new_store,
)


class FailingQueue(InMemoryWorkQueue):
    def enqueue_many(self, units):
        raise QueueError("Redis unavailable")


class TestDispatch:

    def setup_method(self):
        self.store = new_store()
        self.obs = RecordingLogger()
        self.sleep = SleepRecorder()
        self.monitor = BatchMonitor(self.store, self.obs)
        self.entities = [self.store.entities.add_ticker(s) for s in ('AAPL', 'MSFT', 'BAD', 'NVDA')]

    def teardown_method(self):
        self.store.close()

    def units(self, entities=None):
        return [
            WorkUnit(window=FetchWindow(e.id, SeriesKind.PRICE_HISTORY, date(2024, 1, 1), date(2024, 1, 5)))
            for e in (entities or self.entities)
        ]

    def sync_dispatcher(self, client):
        executor = WorkUnitExecutor(self.store, client, self.monitor, self.obs, tries=1, sleep=self.sleep)
        return BatchDispatcher(self.monitor, executor=executor, obs=self.obs, sleep=self.sleep)

    def test_one_failing_unit_does_not_stop_the_batch(self):
        client = StubSyncClient({
            'AAPL': [PageResult(records=[make_bar(2024, 1, 2)])],
            'BAD': [PageResult(outcome=FetchOutcome.TERMINAL, status_code=403)],
        })
        dispatcher = self.sync_dispatcher(client)

        batches = dispatcher.dispatch(self.units(), SyncConfig(batch_size=10), 'PolygonPriceHistory',
                                      mode=DispatchMode.SYNC)

        assert len(batches) == 1
        batch = batches[0]
        assert (batch.total, batch.processed, batch.failed, batch.pending) == (4, 3, 1, 0)
        assert batch.status == BatchStatus.PARTIAL_FAILURE
        assert [symbol for symbol, _ in client.calls] == ['AAPL', 'MSFT', 'BAD', 'NVDA']
        bad = self.entities[2]
        assert self.store.get_watermark(bad.id, SeriesKind.PRICE_HISTORY, '1d') is None
        for good in (self.entities[0], self.entities[1], self.entities[3]):
            assert self.store.get_watermark(good.id, SeriesKind.PRICE_HISTORY, '1d') == date(2024, 1, 5)

    def test_store_error_on_one_ticker_leaves_the_rest_running(self):
        aapl, _, bad, nvda = self.entities
        break_watermarks(self.store, bad.id)
        client = StubSyncClient({symbol: [PageResult(records=[make_bar(2024, 1, 2)])]
                                 for symbol in ('AAPL', 'BAD', 'NVDA')})

        batches = self.sync_dispatcher(client).dispatch(self.units([aapl, bad, nvda]), SyncConfig(batch_size=10),
                                                        'PolygonPriceHistory', mode=DispatchMode.SYNC)

        batch = batches[0]
        assert (batch.total, batch.processed, batch.failed, batch.pending) == (3, 2, 1, 0)
        assert batch.status == BatchStatus.PARTIAL_FAILURE
        assert [symbol for symbol, _ in client.calls] == ['AAPL', 'BAD', 'NVDA']
        assert self.store.get_watermark(nvda.id, SeriesKind.PRICE_HISTORY, '1d') == date(2024, 1, 5)
        assert self.store.prices.count_bars(bad.id, '1d') == 1

    def test_run_retry_bound_travels_with_each_unit(self):
        client = StubSyncClient()
        self.sync_dispatcher(client).dispatch(self.units(self.entities[:2]), SyncConfig(max_retries=0),
                                              'PolygonNews', mode=DispatchMode.SYNC)
        queue = InMemoryWorkQueue()
        BatchDispatcher(self.monitor, queue=queue, obs=self.obs, sleep=self.sleep).dispatch(
            self.units(self.entities[:1]), SyncConfig(max_retries=5), 'PolygonNews')

        assert client.retry_bounds == [0, 0]
        assert queue.dequeue().max_retries == 5

    def test_zero_retry_run_gives_up_after_one_server_error(self):
        session = FakeSession([FakeResponse(503)] * 4)
        client = SyncClient(make_client(session, self.sleep, max_retries=3))

        batches = self.sync_dispatcher(client).dispatch(self.units(self.entities[:1]), SyncConfig(max_retries=0),
                                                        'PolygonPriceHistory', mode=DispatchMode.SYNC)

        assert (batches[0].failed, batches[0].status) == (1, BatchStatus.PARTIAL_FAILURE)
        assert len(session.calls) == 1
        assert self.sleep.calls == []

    def test_batches_are_named_in_order_and_paced(self):
        dispatcher = self.sync_dispatcher(StubSyncClient())

        batches = dispatcher.dispatch(self.units(), SyncConfig(batch_size=3, sleep_seconds=2.5), 'PolygonNews',
                                      mode=DispatchMode.SYNC)

        assert [b.name for b in batches] == ['PolygonNews Batch #1', 'PolygonNews Batch #2']
        assert [b.total for b in batches] == [3, 1]
        assert all(b.status == BatchStatus.COMPLETE for b in batches)
        assert self.sleep.calls == [2.5]

    def test_on_unit_callback_sees_every_outcome(self):
        seen = []
        dispatcher = self.sync_dispatcher(StubSyncClient())

        dispatcher.dispatch(self.units(), SyncConfig(batch_size=2, sleep_seconds=0), 'x', mode=DispatchMode.SYNC,
                            on_unit=lambda unit, outcome: seen.append(outcome.value))

        assert seen == ['succeeded'] * 4
        assert self.sleep.calls == []

    def test_queued_dispatch_tags_units_with_their_batch(self):
        queue = InMemoryWorkQueue()
        dispatcher = BatchDispatcher(self.monitor, queue=queue, obs=self.obs, sleep=self.sleep)

        batches = dispatcher.dispatch(self.units(), SyncConfig(batch_size=2, sleep_seconds=1), 'PolygonFundamentals')

        assert queue.size() == 4
        queued = [queue.dequeue() for _ in range(4)]
        assert [u.batch_id for u in queued] == [batches[0].id] * 2 + [batches[1].id] * 2
        assert all(b.status == BatchStatus.RUNNING and b.pending == 2 for b in batches)
        assert self.sleep.calls == [1]

    def test_enqueue_failure_fails_the_whole_batch(self):
        dispatcher = BatchDispatcher(self.monitor, queue=FailingQueue(), obs=self.obs, sleep=self.sleep)

        batches = dispatcher.dispatch(self.units(), SyncConfig(batch_size=10), 'PolygonNews')

        assert batches[0].status == BatchStatus.PARTIAL_FAILURE
        assert (batches[0].failed, batches[0].pending) == (4, 0)
        assert 'batch_enqueue_failed' in self.obs.messages('ERROR')
        assert self.monitor.failed_count() == 4

    def test_no_units_creates_no_batches(self):
        dispatcher = BatchDispatcher(self.monitor, queue=InMemoryWorkQueue())
        assert dispatcher.dispatch([], SyncConfig(), 'x') == []

    def test_mode_requires_its_backend(self):
        with pytest.raises(ValueError):
            BatchDispatcher(self.monitor).dispatch(self.units(), SyncConfig(), 'x')
        with pytest.raises(ValueError):
            BatchDispatcher(self.monitor, queue=InMemoryWorkQueue()).dispatch(
                self.units(), SyncConfig(), 'x', mode=DispatchMode.SYNC)
