"""
Batch Monitor
Durable batch lifecycle tracking plus the failed-unit ledger.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from common.models.data_models import Batch, BatchStatus, FailedUnit, SeriesKind, WorkUnit
from scraper.utils.structured_logging import NullLogger, ObservabilityPort, safe_emit


class BatchMonitor:
    """
    Owns Batch records.

    Counter updates are atomic in the store, so any number of workers can
    report into the same batch; a batch leaves ``running`` exactly once.
    """

    def __init__(self, store, obs: Optional[ObservabilityPort] = None):
        """
        Args:
            store: IngestStore (uses its batches and failed_units repositories)
            obs: Observability port
        """
        self.batches = store.batches
        self.failed_units = store.failed_units
        self.obs = obs or NullLogger()

    def create_batch(self, name: str, total: int) -> Batch:
        """Register a batch of ``total`` units; an empty batch completes immediately."""
        batch = self.batches.create(uuid.uuid4().hex, name, total)
        safe_emit(self.obs, 'info', 'batch_created', batch_id=batch.id, name=name, total=total)
        return batch

    def record_success(self, batch_id: Optional[str]) -> Optional[Batch]:
        if not batch_id:
            return None
        batch = self.batches.record_processed(batch_id)
        self._report_finish(batch)
        return batch

    def record_failure(self, batch_id: Optional[str], unit: WorkUnit, reason: str,
                       symbol: Optional[str] = None) -> Optional[Batch]:
        """Count a terminal failure and keep the unit for review or requeue."""
        self.failed_units.record(unit, reason, symbol=symbol)
        safe_emit(self.obs, 'warn', 'work_unit_failed', batch_id=batch_id, unit_key=unit.key,
                  symbol=symbol, series_kind=unit.window.series_kind.value,
                  attempts=unit.attempts, reason=reason)
        if not batch_id:
            return None
        batch = self.batches.record_failed(batch_id)
        self._report_finish(batch)
        return batch

    def status(self, batch_id: str) -> Optional[Batch]:
        return self.batches.get(batch_id)

    def is_cancelled(self, batch_id: Optional[str]) -> bool:
        if not batch_id:
            return False
        batch = self.batches.get(batch_id)
        return batch is not None and batch.status == BatchStatus.CANCELLED

    def cancel(self, batch_id: str) -> bool:
        """Cancel a running batch; workers skip its remaining units."""
        cancelled = self.batches.cancel(batch_id)
        safe_emit(self.obs, 'info' if cancelled else 'warn',
                  'batch_cancelled' if cancelled else 'batch_cancel_ignored', batch_id=batch_id)
        return cancelled

    def list_batches(self, limit: int = 5, failed_only: bool = False,
                     active_only: bool = False) -> List[Batch]:
        return self.batches.list_batches(limit=limit, failed_only=failed_only, active_only=active_only)

    def running_count(self) -> int:
        return self.batches.count_unfinished()

    def failed_count(self) -> int:
        return self.failed_units.count()

    def list_failed(self, series_kind: Optional[SeriesKind] = None, limit: int = 0) -> List[FailedUnit]:
        return self.failed_units.list_failed(series_kind=series_kind, limit=limit)

    def forget_failed(self, unit_keys: List[str]) -> int:
        return self.failed_units.delete(unit_keys)

    def cleanup(self, days: int = 7, include_failed: bool = False,
                now: Optional[datetime] = None) -> int:
        """Delete finished batches older than ``days``; returns rows removed."""
        if days < 0:
            raise ValueError(f"days must be >= 0, got {days}")
        cutoff = (now or datetime.utcnow()) - timedelta(days=days)
        deleted = self.batches.delete_finished(cutoff, include_failed=include_failed)
        safe_emit(self.obs, 'info', 'batch_cleanup', deleted=deleted, days=days,
                  include_failed=include_failed)
        return deleted

    def _report_finish(self, batch: Optional[Batch]) -> None:
        if batch is not None and batch.status.is_finished and batch.pending == 0:
            safe_emit(self.obs, 'info', 'batch_finished', batch_id=batch.id, name=batch.name,
                      status=batch.status.value, processed=batch.processed, failed=batch.failed)
