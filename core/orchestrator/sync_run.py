"""
Sync Orchestrator
Plans windows for a set of tickers and dispatches them as batches.

One run covers one series kind:
1. Resolve entities (explicit symbols or the active universe)
2. Plan windows per entity from its watermark
3. Chunk the resulting work units into named batches
4. Queue them for workers, or execute them in-process
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterator, List, Optional

from tqdm import tqdm

from common.config.settings import FUNDAMENTAL_TIMEFRAMES, SyncConfig
from common.errors import EntityNotFoundError, PlanningAnomaly
from common.models.data_models import Batch, Entity, FetchOutcome, SeriesKind, WorkUnit
from scraper.clients.reference_client import ReferenceClient
from scraper.pipeline.dispatcher import BatchDispatcher, DispatchMode
from scraper.pipeline.range_planner import RangePlanner
from scraper.utils.structured_logging import NullLogger, ObservabilityPort

BATCH_NAMES = {
    SeriesKind.PRICE_HISTORY: 'PolygonPriceHistory',
    SeriesKind.FUNDAMENTALS: 'PolygonFundamentals',
    SeriesKind.NEWS: 'PolygonNews',
    SeriesKind.OVERVIEW: 'PolygonOverviews',
}

DEFAULT_RESOLUTIONS = {
    SeriesKind.PRICE_HISTORY: '1d',
    SeriesKind.FUNDAMENTALS: 'quarterly',
    SeriesKind.NEWS: 'articles',
    SeriesKind.OVERVIEW: 'snapshot',
}


def expand_resolutions(series_kind: SeriesKind, resolution: Optional[str]) -> List[str]:
    """Resolutions a request covers; fundamentals 'all' fans out to every timeframe."""
    if series_kind == SeriesKind.FUNDAMENTALS and resolution == 'all':
        return list(FUNDAMENTAL_TIMEFRAMES)
    return [resolution or DEFAULT_RESOLUTIONS[series_kind]]


@dataclass
class SyncRequest:
    """What to sync in one run."""
    series_kind: SeriesKind
    symbols: Optional[List[str]] = None
    limit: Optional[int] = None
    resolution: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    explicit_from: Optional[date] = None
    explicit_to: Optional[date] = None
    mode: DispatchMode = DispatchMode.QUEUED
    include_inactive: bool = False


@dataclass
class RunSummary:
    """Human- and machine-readable result of one sync run."""
    series_kind: SeriesKind
    mode: DispatchMode
    entities: int = 0
    planned_units: int = 0
    up_to_date: int = 0
    missing_symbols: List[str] = field(default_factory=list)
    planning_errors: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    batches: List[Batch] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return sum(b.processed for b in self.batches)

    @property
    def failed(self) -> int:
        return sum(b.failed for b in self.batches)

    @property
    def pending(self) -> int:
        return sum(b.pending for b in self.batches)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or bool(self.planning_errors) or bool(self.skipped)

    def to_dict(self) -> dict:
        return {
            'series_kind': self.series_kind.value,
            'mode': self.mode.value,
            'entities': self.entities,
            'planned_units': self.planned_units,
            'up_to_date': self.up_to_date,
            'batches': len(self.batches),
            'processed': self.processed,
            'failed': self.failed,
            'pending': self.pending,
            'missing_symbols': list(self.missing_symbols),
            'planning_errors': list(self.planning_errors),
            'skipped': list(self.skipped),
        }

    def lines(self) -> List[str]:
        """Summary lines for terminal output."""
        out = [
            f"Series        : {self.series_kind.value} ({self.mode.value})",
            f"Tickers       : {self.entities} ({self.up_to_date} up to date)",
            f"Work units    : {self.planned_units} in {len(self.batches)} batch(es)",
            f"Processed     : {self.processed}",
            f"Failed        : {self.failed}",
            f"Pending       : {self.pending}",
        ]
        for batch in self.batches:
            out.append(f"  {batch.name:<36} {batch.status.value:<16} {batch.progress:6.2f}%  id={batch.id}")
        if self.missing_symbols:
            out.append(f"Not found     : {', '.join(self.missing_symbols)}")
        for error in self.planning_errors:
            out.append(f"Planning error: {error}")
        for reason in self.skipped:
            out.append(f"Skipped       : {reason}")
        return out


@dataclass
class UniverseSummary:
    """Result of a ticker universe refresh."""
    fetched: int = 0
    stored: int = 0
    outcome: FetchOutcome = FetchOutcome.OK
    error: Optional[str] = None

    @property
    def has_failures(self) -> bool:
        return self.outcome.is_failure


class SyncOrchestrator:
    """Coordinates planner and dispatcher for one series per run."""

    def __init__(self, store, planner: RangePlanner, dispatcher: BatchDispatcher,
                 reference: Optional[ReferenceClient] = None,
                 obs: Optional[ObservabilityPort] = None, progress: bool = True):
        self.store = store
        self.planner = planner
        self.dispatcher = dispatcher
        self.reference = reference
        self.obs = obs or NullLogger()
        self.progress = progress

    def resolve_entities(self, request: SyncRequest, summary: RunSummary) -> List[Entity]:
        active_only = not request.include_inactive
        if not request.symbols:
            return self.store.entities.list_entities(active_only=active_only, limit=request.limit)

        entities = []
        for symbol in request.symbols:
            try:
                entities.append(self.store.entities.get_by_symbol(symbol))
            except EntityNotFoundError:
                summary.missing_symbols.append(symbol)
                self.obs.warn('entity_not_found', symbol=symbol,
                              series_kind=request.series_kind.value)
        if request.limit:
            entities = entities[:request.limit]
        return entities

    def _plan(self, entities: List[Entity], request: SyncRequest, config: SyncConfig,
              summary: RunSummary) -> Iterator[WorkUnit]:
        kind = request.series_kind
        resolutions = expand_resolutions(kind, request.resolution)
        for entity in tqdm(entities, desc=f"Planning {kind.value}", disable=not self.progress):
            for resolution in resolutions:
                try:
                    windows = self.planner.plan_windows(
                        entity, kind, config,
                        resolution=resolution,
                        params=request.params,
                        explicit_from=request.explicit_from,
                        explicit_to=request.explicit_to,
                    )
                except PlanningAnomaly as e:
                    summary.skipped.append(str(e))
                    continue
                except Exception as e:
                    # Anything else also skips only this entity
                    message = f"{entity.symbol}/{resolution}: {type(e).__name__}: {e}"
                    summary.planning_errors.append(message)
                    self.obs.error('plan_failed', symbol=entity.symbol,
                                   series_kind=kind.value, resolution=resolution, error=str(e))
                    continue
                if not windows:
                    summary.up_to_date += 1
                    continue
                for window in windows:
                    summary.planned_units += 1
                    yield WorkUnit(window=window)

    def run(self, request: SyncRequest, config: SyncConfig) -> RunSummary:
        """Plan and dispatch one series; never raises for per-entity problems."""
        summary = RunSummary(series_kind=request.series_kind, mode=request.mode)
        entities = self.resolve_entities(request, summary)
        summary.entities = len(entities)
        self.obs.info('sync_run_started', series_kind=request.series_kind.value,
                      mode=request.mode.value, entities=len(entities),
                      batch_size=config.batch_size, window_days=config.window_days,
                      redundancy_days=config.redundancy_days)

        if entities:
            summary.batches = self.dispatcher.dispatch(
                self._plan(entities, request, config, summary),
                config,
                name=BATCH_NAMES[request.series_kind],
                mode=request.mode,
            )

        self.obs.info('sync_run_finished', **summary.to_dict())
        return summary

    def sync_universe(self, market: str = 'stocks', active: Optional[bool] = True,
                      max_pages: Optional[int] = None) -> UniverseSummary:
        """Refresh the tickers table from the reference listing."""
        if self.reference is None:
            raise ValueError("ticker universe refresh needs a reference client")
        result = self.reference.list_tickers(market=market, active=active, max_pages=max_pages)
        # Pages fetched before a failure are still stored
        stored = self.store.entities.upsert_tickers(result.records) if result.records else 0
        summary = UniverseSummary(fetched=len(result.records), stored=stored,
                                  outcome=result.outcome, error=result.error)
        log = self.obs.warn if summary.has_failures else self.obs.info
        log('ticker_universe_synced', market=market, fetched=summary.fetched,
            stored=stored, outcome=result.outcome.value, error=result.error)
        return summary
