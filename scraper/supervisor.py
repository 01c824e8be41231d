"""
Queue Supervisor
Samples queue health and signals graceful worker restarts.

The supervisor never spawns workers and never creates or cancels work
units. A restart is a marker timestamp in the queue backend; every worker
started before it exits after its current unit and the process manager
brings a fresh one up.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from common.config.settings import SupervisorConfig, WorkerConfig
from scraper.pipeline.batch_monitor import BatchMonitor
from scraper.pipeline.work_queue import WorkQueue
from scraper.utils.structured_logging import NullLogger, ObservabilityPort


class SupervisorState(str, Enum):
    HEALTHY = "healthy"
    RESTART_RECOMMENDED = "restart_recommended"
    RESTARTING = "restarting"


@dataclass
class HealthSample:
    """One observation of queue health."""
    backlog: int
    running_batches: int
    failed_units: int
    last_restart: Optional[float] = None
    minutes_since_restart: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            'backlog': self.backlog,
            'running_batches': self.running_batches,
            'failed_units': self.failed_units,
            'last_restart': (
                datetime.fromtimestamp(self.last_restart, tz=timezone.utc).isoformat()
                if self.last_restart is not None else None
            ),
            'minutes_since_restart': self.minutes_since_restart,
        }


@dataclass
class SupervisorReport:
    """Outcome of one supervisor tick."""
    sample: HealthSample
    state: SupervisorState
    reason: Optional[str] = None
    restarted: bool = False
    dry_run: bool = False


def recommended_worker_command(config: WorkerConfig) -> str:
    """The worker invocation the thresholds were tuned for."""
    return (
        f"tickersync worker --sleep={config.sleep} --backoff={config.backoff} "
        f"--max-jobs={config.max_jobs} --max-time={config.max_time} "
        f"--tries={config.tries}"
    )


class QueueSupervisor:
    """Health state machine: healthy -> restart_recommended -> restarting."""

    def __init__(self, queue: WorkQueue, monitor: BatchMonitor, config: SupervisorConfig,
                 obs: Optional[ObservabilityPort] = None,
                 worker_config: Optional[WorkerConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.queue = queue
        self.monitor = monitor
        self.config = config
        self.worker_config = worker_config
        self.obs = obs or NullLogger()
        self._clock = clock
        self.state = SupervisorState.HEALTHY
        self.scheduler: Optional[BackgroundScheduler] = None

    def sample(self) -> HealthSample:
        last_restart = self.queue.last_restart()
        minutes = None
        if last_restart is not None:
            minutes = int(max(0.0, self._clock() - last_restart) // 60)
        return HealthSample(
            backlog=self.queue.size(),
            running_batches=self.monitor.running_count(),
            failed_units=self.monitor.failed_count(),
            last_restart=last_restart,
            minutes_since_restart=minutes,
        )

    def evaluate(self, sample: HealthSample, force_restart: bool = False) -> Optional[str]:
        """Reason a restart is recommended, or None when within thresholds."""
        if force_restart:
            return 'force flag passed'
        if sample.backlog >= self.config.backlog_hard:
            return f"backlog {sample.backlog} >= hard threshold {self.config.backlog_hard}"
        # Without a restart marker there is no cooldown to measure against
        if (sample.backlog >= self.config.backlog_soft
                and sample.minutes_since_restart is not None
                and sample.minutes_since_restart >= self.config.restart_minutes):
            return (
                f"backlog {sample.backlog} >= soft threshold {self.config.backlog_soft} "
                f"AND last restart {sample.minutes_since_restart} min ago >= "
                f"{self.config.restart_minutes} min"
            )
        return None

    def tick(self, dry_run: bool = False, force_restart: bool = False) -> SupervisorReport:
        """Sample, decide and (unless dry-run) signal a restart."""
        sample = self.sample()
        self.obs.info('supervisor_metrics', dry_run=dry_run, **sample.to_dict())

        reason = self.evaluate(sample, force_restart=force_restart)
        if reason is None:
            self.state = SupervisorState.HEALTHY
            return SupervisorReport(sample, self.state, dry_run=dry_run)

        self.state = SupervisorState.RESTART_RECOMMENDED
        if dry_run:
            self.obs.warn('supervisor_restart_recommended', reason=reason, dry_run=True)
            return SupervisorReport(sample, self.state, reason=reason, dry_run=True)

        self.queue.signal_restart(self._clock())
        self.state = SupervisorState.RESTARTING
        extra = {}
        if self.worker_config is not None:
            extra['command'] = recommended_worker_command(self.worker_config)
        self.obs.warn('supervisor_restart_signaled', reason=reason, backlog=sample.backlog,
                      running_batches=sample.running_batches,
                      failed_units=sample.failed_units, **extra)
        return SupervisorReport(sample, self.state, reason=reason, restarted=True)

    def _scheduled_tick(self, dry_run: bool) -> None:
        try:
            self.tick(dry_run=dry_run)
        except Exception as e:
            self.obs.error('supervisor_tick_failed', error=f"{type(e).__name__}: {e}")

    def start(self, dry_run: bool = False, interval_seconds: Optional[int] = None) -> None:
        """Run ticks on an interval in a background scheduler thread."""
        interval = interval_seconds or self.config.interval_seconds
        self.scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Prevent concurrent execution
                'misfire_grace_time': 30,
            }
        )
        self.scheduler.add_job(
            func=self._scheduled_tick,
            trigger=IntervalTrigger(seconds=interval),
            kwargs={'dry_run': dry_run},
            id='queue_supervisor',
            name='Queue Supervisor',
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
        )
        self.scheduler.start()
        self.obs.info('supervisor_started', interval_seconds=interval, dry_run=dry_run)

    def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self.obs.info('supervisor_stopped')
