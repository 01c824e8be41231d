"""
Service wiring for CLI commands.

Builds the store, upstream client, queue and pipeline components from an
IngestConfig on first use, so commands only connect to what they need.
"""
import time
from typing import Callable, Optional

import requests

from common.config.settings import IngestConfig
from common.errors import ConfigurationError
from core.orchestrator.refresh_all import RefreshAllRunner
from core.orchestrator.sync_run import SyncOrchestrator
from scraper.clients import PolygonClient, SyncClient
from scraper.pipeline.batch_monitor import BatchMonitor
from scraper.pipeline.dispatcher import BatchDispatcher
from scraper.pipeline.executor import WorkUnitExecutor
from scraper.pipeline.range_planner import RangePlanner
from scraper.pipeline.work_queue import RedisWorkQueue, WorkQueue
from scraper.supervisor import QueueSupervisor
from scraper.utils.structured_logging import ObservabilityPort
from storage.postgres.store import IngestStore


class Runtime:
    """Lazily constructed services shared by one CLI invocation."""

    def __init__(self, config: IngestConfig, obs: ObservabilityPort,
                 store: Optional[IngestStore] = None,
                 queue: Optional[WorkQueue] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 progress: bool = True):
        """
        Args:
            config: Complete engine configuration
            obs: Observability port handed to every component
            store: Pre-built store (tests)
            queue: Pre-built work queue (tests); Redis otherwise
            session: HTTP session for the upstream client (tests inject a fake)
            sleep: Sleep function for clients, dispatcher and workers
            progress: Show tqdm progress bars while planning
        """
        self.config = config
        self.obs = obs
        self.sleep = sleep
        self.progress = progress
        self._store = store
        self._queue = queue
        self._session = session
        self._client: Optional[PolygonClient] = None
        self._sync_client: Optional[SyncClient] = None
        self._executor: Optional[WorkUnitExecutor] = None

    @property
    def store(self) -> IngestStore:
        if self._store is None:
            self._store = IngestStore.from_config(self.config.database)
        return self._store

    @property
    def queue(self) -> WorkQueue:
        if self._queue is None:
            self._queue = RedisWorkQueue.from_config(self.config.redis)
        return self._queue

    @property
    def client(self) -> PolygonClient:
        if self._client is None:
            if not self.config.polygon.api_key:
                raise ConfigurationError("POLYGON_API_KEY is not set")
            http = self.config.http
            self._client = PolygonClient(
                api_key=self.config.polygon.api_key,
                base_url=self.config.polygon.base_url,
                rate_limit=http.rate_limit,
                max_retries=http.max_retries,
                timeout=http.timeout,
                max_connections=http.max_connections,
                retry_base_seconds=http.retry_base_seconds,
                session=self._session,
                sleep=self.sleep,
                obs=self.obs,
            )
        return self._client

    @property
    def sync_client(self) -> SyncClient:
        if self._sync_client is None:
            self._sync_client = SyncClient(self.client)
        return self._sync_client

    @property
    def monitor(self) -> BatchMonitor:
        return BatchMonitor(self.store, obs=self.obs)

    def executor(self, tries: Optional[int] = None, backoff: Optional[float] = None) -> WorkUnitExecutor:
        worker = self.config.worker
        if self._executor is None or tries is not None or backoff is not None:
            self._executor = WorkUnitExecutor(
                self.store, self.sync_client, self.monitor,
                obs=self.obs,
                tries=tries or worker.tries,
                backoff_seconds=backoff if backoff is not None else worker.backoff,
                sleep=self.sleep,
            )
        return self._executor

    def dispatcher(self, sync: bool = False) -> BatchDispatcher:
        if sync:
            return BatchDispatcher(self.monitor, executor=self.executor(), obs=self.obs, sleep=self.sleep)
        return BatchDispatcher(self.monitor, queue=self.queue, obs=self.obs, sleep=self.sleep)

    def orchestrator(self, sync: bool = False) -> SyncOrchestrator:
        return SyncOrchestrator(
            self.store,
            RangePlanner(self.store, obs=self.obs),
            self.dispatcher(sync=sync),
            reference=self.sync_client.reference,
            obs=self.obs,
            progress=self.progress,
        )

    def refresh_runner(self, sync: bool = False) -> RefreshAllRunner:
        return RefreshAllRunner(
            self.orchestrator(sync=sync),
            self.config.sync_for,
            queue=None if sync else self.queue,
            obs=self.obs,
            sleep=self.sleep,
        )

    def supervisor(self) -> QueueSupervisor:
        return QueueSupervisor(self.queue, self.monitor, self.config.supervisor,
                               obs=self.obs, worker_config=self.config.worker)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        if self._queue is not None:
            self._queue.close()
        if self._store is not None:
            self._store.close()
