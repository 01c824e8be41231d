"""
Queue Worker
Pulls work units off the queue and executes them until a stop limit hits.

Meant to run under a process manager (Docker restart policy, systemd) that
starts a fresh worker whenever one exits; max_jobs, max_time and the
restart marker keep individual worker processes short-lived.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from common.config.settings import WorkerConfig
from common.errors import QueueError
from common.models.data_models import UnitOutcome, WorkUnit
from scraper.pipeline.executor import WorkUnitExecutor
from scraper.pipeline.work_queue import WorkQueue
from scraper.utils.structured_logging import NullLogger, ObservabilityPort


@dataclass
class WorkerStats:
    """Counters for one worker lifetime."""
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    deferred: int = 0
    stop_reason: Optional[str] = None

    @property
    def handled(self) -> int:
        return self.succeeded + self.failed + self.retried + self.skipped

    def to_dict(self) -> dict:
        return {
            'succeeded': self.succeeded,
            'failed': self.failed,
            'retried': self.retried,
            'skipped': self.skipped,
            'deferred': self.deferred,
            'stop_reason': self.stop_reason,
        }


class QueueWorker:
    """Single-threaded queue consumer."""

    def __init__(self, queue: WorkQueue, executor: WorkUnitExecutor, config: WorkerConfig,
                 obs: Optional[ObservabilityPort] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep,
                 now: Callable[[], datetime] = datetime.utcnow):
        self.queue = queue
        self.executor = executor
        self.config = config
        self.obs = obs or NullLogger()
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self.stats = WorkerStats()

    def _stop_reason(self, started: float) -> Optional[str]:
        if self.config.max_jobs and self.stats.handled >= self.config.max_jobs:
            return 'max_jobs'
        if self.config.max_time and self._clock() - started >= self.config.max_time:
            return 'max_time'
        try:
            restart = self.queue.last_restart()
        except QueueError as e:
            # Unreadable marker counts as no signal
            self.obs.error('worker_restart_check_failed', error=str(e))
            restart = None
        if restart is not None and restart >= started:
            return 'restart_signal'
        return None

    def _requeue(self, unit: WorkUnit) -> bool:
        """Put a popped unit back; if the queue refuses it the unit is failed, never dropped."""
        try:
            self.queue.enqueue(unit)
            return True
        except QueueError as e:
            self.obs.error('worker_requeue_failed', unit_key=unit.key, batch_id=unit.batch_id,
                           error=str(e))
            self.executor.fail(unit, f"requeue failed: {e}")
            self.stats.failed += 1
            return False

    def _execute(self, unit: WorkUnit) -> UnitOutcome:
        try:
            return self.executor.execute(unit)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            self.obs.error('worker_execute_failed', unit_key=unit.key, batch_id=unit.batch_id,
                           error=reason)
            if unit.attempts + 1 < self.config.tries:
                return UnitOutcome.RETRY
            return self.executor.fail(unit, reason)

    def _backlog(self) -> int:
        try:
            return self.queue.size()
        except QueueError:
            return 0

    def run(self, stop_when_empty: bool = False) -> WorkerStats:
        """
        Process units until a limit is reached.

        Args:
            stop_when_empty: Exit instead of sleeping when the queue is drained
        """
        started = self._clock()
        self.obs.info('worker_started', max_jobs=self.config.max_jobs,
                      max_time=self.config.max_time, tries=self.config.tries)
        deferred_in_row = 0

        while True:
            reason = self._stop_reason(started)
            if reason:
                self.stats.stop_reason = reason
                break

            try:
                unit = self.queue.dequeue()
            except QueueError as e:
                self.obs.error('worker_dequeue_failed', error=str(e))
                self._sleep(self.config.sleep)
                continue

            if unit is None:
                if stop_when_empty:
                    self.stats.stop_reason = 'empty'
                    break
                self._sleep(self.config.sleep)
                continue

            if not unit.is_due(self._now()):
                # Not yet due: back to the tail so other units keep flowing
                if not self._requeue(unit):
                    continue
                self.stats.deferred += 1
                deferred_in_row += 1
                # A full lap of deferrals means nothing is due yet
                if deferred_in_row >= self._backlog():
                    wait = (unit.next_allowed_at - self._now()).total_seconds()
                    self._sleep(max(0.0, min(wait, float(self.config.sleep))))
                    deferred_in_row = 0
                continue

            deferred_in_row = 0
            outcome = self._execute(unit)
            if outcome == UnitOutcome.SUCCEEDED:
                self.stats.succeeded += 1
            elif outcome == UnitOutcome.FAILED:
                self.stats.failed += 1
            elif outcome == UnitOutcome.SKIPPED:
                self.stats.skipped += 1
            elif self._requeue(unit.next_attempt(self.config.backoff, self._now())):
                self.stats.retried += 1

        self.obs.info('worker_stopped', **self.stats.to_dict())
        return self.stats
