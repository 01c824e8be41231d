"""
Work Unit Executor
Fetches one window, upserts its records and advances the watermark.
"""
import time
from datetime import datetime
from typing import Callable, Optional

from common.errors import EntityNotFoundError
from common.models.data_models import (
    FetchOutcome,
    UnitOutcome,
    UpsertResult,
    WorkUnit,
)
from scraper.clients.sync_client import SyncClient
from scraper.pipeline.batch_monitor import BatchMonitor
from scraper.utils.structured_logging import NullLogger, ObservabilityPort, safe_emit
from storage.interfaces import RecordStore


class WorkUnitExecutor:
    """
    Executes work units against the upstream API and the store.

    Units carry only ids and dates; the entity is resolved again here so a
    unit can be executed by any worker process. The watermark is advanced
    only after the whole window was fetched and persisted, so a failed
    window is planned again on the next run.
    """

    def __init__(self, store: RecordStore, sync_client: SyncClient, monitor: BatchMonitor,
                 obs: Optional[ObservabilityPort] = None, tries: int = 3,
                 backoff_seconds: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep,
                 now: Callable[[], datetime] = datetime.utcnow):
        """
        Args:
            store: Record store with entity lookup (normally IngestStore)
            sync_client: Series-aware upstream client
            monitor: Batch monitor receiving terminal outcomes
            obs: Observability port
            tries: Total attempts per unit before it is failed
            backoff_seconds: Base delay between unit attempts (doubles each retry)
            sleep: Sleep function (tests pass a recorder)
            now: UTC clock
        """
        if tries < 1:
            raise ValueError(f"tries must be >= 1, got {tries}")
        self.store = store
        self.sync_client = sync_client
        self.monitor = monitor
        self.obs = obs or NullLogger()
        self.tries = tries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._now = now
        self.upserted = UpsertResult()

    def execute(self, unit: WorkUnit) -> UnitOutcome:
        """
        Run one attempt of a unit.

        Any error after dequeue, including store errors while resolving the
        entity or advancing the watermark, stays inside this unit: it is
        retried or failed like an upstream error.

        Returns:
            SUCCEEDED or FAILED once the batch was told; RETRY when the
            caller should schedule another attempt; SKIPPED for units of a
            cancelled batch
        """
        window = unit.window
        log = self.obs.bind(
            unit_key=unit.key,
            series_kind=window.series_kind.value,
            resolution=window.resolution,
            batch_id=unit.batch_id,
            attempt=unit.attempts + 1,
            **{'from': window.from_date.isoformat(), 'to': window.to_date.isoformat()},
        )
        symbol: Optional[str] = None

        try:
            if self.monitor.is_cancelled(unit.batch_id):
                safe_emit(log, 'info', 'work_unit_skipped', reason='batch_cancelled')
                return UnitOutcome.SKIPPED

            try:
                entity = self.store.entities.get(window.entity_id)
            except EntityNotFoundError as e:
                return self.fail(unit, str(e))
            symbol = entity.symbol
            log = log.bind(symbol=symbol)

            result = self.sync_client.fetch_window(entity, window, max_retries=unit.max_retries)
            upserted = UpsertResult()
            # Records from pages fetched before a failure are still kept
            if result.records:
                upserted = self.store.upsert(entity, window.series_kind, window.resolution,
                                             result.records, as_of=window.to_date)
                self.upserted += upserted

            if result.outcome != FetchOutcome.OK:
                reason = result.error or f"upstream {result.outcome.value} (status {result.status_code})"
                if result.outcome == FetchOutcome.TERMINAL:
                    return self.fail(unit, reason, symbol)
                return self._retry_or_fail(unit, symbol, reason, log)

            stored = self.store.advance_watermark(window.entity_id, window.series_kind,
                                                  window.resolution, window.to_date)
            self.monitor.record_success(unit.batch_id)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            safe_emit(log, 'error', 'work_unit_error', error=reason)
            return self._retry_or_fail(unit, symbol, reason, log)

        safe_emit(log, 'info', 'work_unit_succeeded', pages=result.pages, accepted=upserted.accepted,
                  rejected=upserted.rejected, watermark=stored.isoformat())
        return UnitOutcome.SUCCEEDED

    def fail(self, unit: WorkUnit, reason: str, symbol: Optional[str] = None) -> UnitOutcome:
        """Record a terminal failure; a store that cannot take the record is logged, not raised."""
        try:
            self.monitor.record_failure(unit.batch_id, unit, reason, symbol=symbol)
        except Exception as e:
            safe_emit(self.obs, 'error', 'work_unit_failure_unrecorded', unit_key=unit.key,
                      batch_id=unit.batch_id, symbol=symbol, reason=reason,
                      error=f"{type(e).__name__}: {e}")
        return UnitOutcome.FAILED

    def run_to_completion(self, unit: WorkUnit) -> UnitOutcome:
        """Execute in-process, sleeping between attempts, until a terminal outcome."""
        while True:
            outcome = self.execute(unit)
            if outcome != UnitOutcome.RETRY:
                return outcome
            now = self._now()
            unit = unit.next_attempt(self.backoff_seconds, now)
            self._sleep(max(0.0, (unit.next_allowed_at - now).total_seconds()))

    def _retry_or_fail(self, unit: WorkUnit, symbol: Optional[str], reason: str, log) -> UnitOutcome:
        if unit.attempts + 1 < self.tries:
            safe_emit(log, 'warn', 'work_unit_retry', reason=reason, tries=self.tries)
            return UnitOutcome.RETRY
        return self.fail(unit, reason, symbol)
