"""
Batch Dispatcher
Chunks work units into named batches and hands them to a queue or
executes them in-process.
"""
import time
from dataclasses import replace
from enum import Enum
from typing import Callable, Iterable, List, Optional

from common.config.settings import SyncConfig
from common.errors import QueueError
from common.models.data_models import Batch, UnitOutcome, WorkUnit
from scraper.pipeline.batch_monitor import BatchMonitor
from scraper.pipeline.batcher import chunk_units
from scraper.pipeline.executor import WorkUnitExecutor
from scraper.pipeline.work_queue import WorkQueue
from scraper.utils.structured_logging import NullLogger, ObservabilityPort


class DispatchMode(str, Enum):
    """Where units of a batch run."""

    QUEUED = "queued"
    SYNC = "sync"


class BatchDispatcher:
    """
    Submits units in batches of ``config.batch_size``.

    Batches are named "<name> Batch #<n>" with n counting from 1 in
    submission order; ``config.sleep_seconds`` is waited between
    successive submissions to spread upstream load.
    """

    def __init__(self, monitor: BatchMonitor, queue: Optional[WorkQueue] = None,
                 executor: Optional[WorkUnitExecutor] = None,
                 obs: Optional[ObservabilityPort] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.monitor = monitor
        self.queue = queue
        self.executor = executor
        self.obs = obs or NullLogger()
        self._sleep = sleep

    def dispatch(self, units: Iterable[WorkUnit], config: SyncConfig, name: str,
                 mode: DispatchMode = DispatchMode.QUEUED,
                 on_unit: Optional[Callable[[WorkUnit, UnitOutcome], None]] = None) -> List[Batch]:
        """
        Dispatch all units.

        Args:
            units: Units to run (consumed lazily)
            config: Batch size and pacing
            name: Batch name prefix
            mode: QUEUED hands units to workers; SYNC runs them here
            on_unit: Callback after each in-process unit (progress bars)

        Returns:
            The batches created, as last observed
        """
        if mode == DispatchMode.QUEUED and self.queue is None:
            raise ValueError("queued dispatch needs a work queue")
        if mode == DispatchMode.SYNC and self.executor is None:
            raise ValueError("sync dispatch needs an executor")

        batches: List[Batch] = []
        for number, chunk in enumerate(chunk_units(units, config.batch_size), start=1):
            if number > 1 and config.sleep_seconds > 0:
                self._sleep(config.sleep_seconds)

            batch = self.monitor.create_batch(f"{name} Batch #{number}", len(chunk))
            members = [replace(unit, batch_id=batch.id, max_retries=config.max_retries) for unit in chunk]
            self.obs.info('batch_dispatched', batch_id=batch.id, name=batch.name,
                          units=len(members), mode=mode.value)

            if mode == DispatchMode.SYNC:
                for unit in members:
                    outcome = self.executor.run_to_completion(unit)
                    if on_unit:
                        on_unit(unit, outcome)
            else:
                self._enqueue(batch, members)

            batches.append(self.monitor.status(batch.id) or batch)
        return batches

    def _enqueue(self, batch: Batch, members: List[WorkUnit]) -> None:
        """Queue the batch; units that could not be queued are failed, never left pending."""
        try:
            self.queue.enqueue_many(members)
        except QueueError as e:
            self.obs.error('batch_enqueue_failed', batch_id=batch.id, name=batch.name, error=str(e))
            for unit in members:
                self.monitor.record_failure(batch.id, unit, f"enqueue failed: {e}")
