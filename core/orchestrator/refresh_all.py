"""
Refresh-all umbrella run.

Runs the standard sequence of syncs, keeps going when a step fails and
reports every step at the end:

    tickers -> overviews -> fundamentals -> prices -> news
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from common.config.settings import SyncConfig
from common.models.data_models import SeriesKind
from core.orchestrator.sync_run import SyncOrchestrator, SyncRequest
from scraper.pipeline.dispatcher import DispatchMode
from scraper.pipeline.work_queue import WorkQueue
from scraper.utils.structured_logging import NullLogger, ObservabilityPort

STEP_ORDER = ('tickers', 'overviews', 'fundamentals', 'prices', 'news')

STEP_SERIES = {
    'overviews': SeriesKind.OVERVIEW,
    'fundamentals': SeriesKind.FUNDAMENTALS,
    'prices': SeriesKind.PRICE_HISTORY,
    'news': SeriesKind.NEWS,
}


def select_steps(daily: bool = False, weekly: bool = False, core: bool = False) -> List[str]:
    """
    Steps for a refresh mode.

    --core: tickers and overviews; --weekly: fundamentals only;
    --daily: everything except fundamentals. Without a mode, all steps.
    """
    if core:
        return ['tickers', 'overviews']
    if weekly:
        return ['fundamentals']
    if daily:
        return [step for step in STEP_ORDER if step != 'fundamentals']
    return list(STEP_ORDER)


@dataclass
class StepResult:
    name: str
    ok: bool
    detail: str = ''
    error: Optional[str] = None
    seconds: float = 0.0


@dataclass
class RefreshReport:
    steps: List[StepResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    def lines(self) -> List[str]:
        out = [f"{'Step':<14} {'Status':<8} {'Time':>8}  Detail"]
        for step in self.steps:
            status = 'ok' if step.ok else 'FAILED'
            detail = step.error or step.detail
            out.append(f"{step.name:<14} {status:<8} {step.seconds:>7.1f}s  {detail}")
        return out


class RefreshAllRunner:
    """Sequences sync steps with per-step failure isolation."""

    def __init__(self, orchestrator: SyncOrchestrator,
                 config_for: Callable[[SeriesKind], SyncConfig],
                 queue: Optional[WorkQueue] = None,
                 obs: Optional[ObservabilityPort] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.orchestrator = orchestrator
        self.config_for = config_for
        self.queue = queue
        self.obs = obs or NullLogger()
        self._sleep = sleep
        self._clock = clock

    def _config(self, kind: SeriesKind, fast: bool) -> SyncConfig:
        config = self.config_for(kind)
        if fast:
            return config.with_overrides(batch_size=config.batch_size * 2, sleep_seconds=0)
        return config

    def wait_for_drain(self, timeout: float, poll_seconds: float = 5.0) -> bool:
        """Block until the queue is empty; False on timeout."""
        if self.queue is None:
            return True
        deadline = self._clock() + timeout
        while self.queue.size() > 0:
            if self._clock() >= deadline:
                self.obs.warn('refresh_wait_timeout', backlog=self.queue.size(), timeout=timeout)
                return False
            self._sleep(poll_seconds)
        return True

    def _run_step(self, name: str, mode: DispatchMode, fast: bool,
                  symbols: Optional[List[str]], limit: Optional[int]) -> StepResult:
        if name == 'tickers':
            universe = self.orchestrator.sync_universe()
            return StepResult(
                name, ok=not universe.has_failures,
                detail=f"{universe.stored} tickers stored",
                error=universe.error,
            )

        kind = STEP_SERIES[name]
        request = SyncRequest(series_kind=kind, symbols=symbols, limit=limit, mode=mode)
        if kind == SeriesKind.FUNDAMENTALS:
            request.resolution = 'all'
        summary = self.orchestrator.run(request, self._config(kind, fast))
        detail = (
            f"{summary.planned_units} units, {len(summary.batches)} batches, "
            f"{summary.processed} processed, {summary.failed} failed, {summary.pending} pending"
        )
        if summary.skipped:
            detail += f", {len(summary.skipped)} skipped"
        return StepResult(name, ok=not summary.has_failures, detail=detail)

    def run(self, steps: List[str], mode: DispatchMode = DispatchMode.QUEUED,
            fast: bool = False, wait: bool = False, wait_timeout: float = 3600,
            symbols: Optional[List[str]] = None, limit: Optional[int] = None) -> RefreshReport:
        """
        Run steps in order.

        Args:
            steps: Subset of STEP_ORDER (see select_steps)
            mode: Queue units or execute them in-process
            fast: Double batch sizes and drop inter-batch pacing
            wait: Block between queued steps until workers drain the queue
            wait_timeout: Seconds to wait per step before moving on
        """
        unknown = [step for step in steps if step not in STEP_ORDER]
        if unknown:
            raise ValueError(f"Unknown refresh steps: {', '.join(unknown)}")

        report = RefreshReport()
        for name in [step for step in STEP_ORDER if step in steps]:
            started = self._clock()
            self.obs.info('refresh_step_started', step=name, mode=mode.value, fast=fast)
            try:
                result = self._run_step(name, mode, fast, symbols, limit)
            except Exception as e:
                result = StepResult(name, ok=False, error=f"{type(e).__name__}: {e}")
                self.obs.error('refresh_step_failed', step=name, error=result.error)

            if wait and mode == DispatchMode.QUEUED and name != 'tickers':
                if not self.wait_for_drain(wait_timeout):
                    result.detail += ' (queue not drained before timeout)'

            result.seconds = self._clock() - started
            report.steps.append(result)
            self.obs.info('refresh_step_finished', step=name, ok=result.ok,
                          detail=result.detail, seconds=round(result.seconds, 2))

        self.obs.info('refresh_all_finished', ok=report.ok, steps=len(report.steps))
        return report
