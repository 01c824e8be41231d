"""Batch ledger repository with atomic counter updates."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from common.models.data_models import Batch, BatchStatus

logger = logging.getLogger(__name__)

_COLUMNS = "id, name, total, pending, failed, processed, status, created_at, updated_at, finished_at"


class BatchRepository:
    """
    Persists Batch rows.

    Counters are changed with single UPDATE statements (``pending = pending - 1``)
    so concurrent workers never lose increments.
    """

    def __init__(self, pool):
        self.pool = pool

    def create(self, batch_id: str, name: str, total: int) -> Batch:
        now = datetime.utcnow()
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                INSERT INTO ingest_batches ({_COLUMNS})
                VALUES (%s, %s, %s, %s, 0, 0, %s, %s, %s, NULL)
            """, (batch_id, name, total, total, BatchStatus.RUNNING.value, now, now))
            self._settle(cur, batch_id, now)
        return self.get(batch_id)

    def get(self, batch_id: str) -> Optional[Batch]:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"SELECT {_COLUMNS} FROM ingest_batches WHERE id = %s", (batch_id,))
            row = cur.fetchone()
        return Batch.from_db_row(row) if row else None

    def record_processed(self, batch_id: str) -> Optional[Batch]:
        return self._record(batch_id, 'processed')

    def record_failed(self, batch_id: str) -> Optional[Batch]:
        return self._record(batch_id, 'failed')

    def _record(self, batch_id: str, counter: str) -> Optional[Batch]:
        """
        Move one unit from pending to ``counter`` in a single statement.

        Counters are per batch, not per unit: ``pending > 0`` only keeps the
        counts from going negative. A redelivered unit that already finished
        still takes a sibling's pending slot, so the batch can settle early
        and the sibling's own outcome is then dropped with a warning.
        """
        now = datetime.utcnow()
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                UPDATE ingest_batches
                SET pending = pending - 1, {counter} = {counter} + 1, updated_at = %s
                WHERE id = %s AND pending > 0
            """, (now, batch_id))
            if cur.rowcount == 0:
                logger.warning("Batch %s has no pending units left to record %s", batch_id, counter)
            self._settle(cur, batch_id, now)
        return self.get(batch_id)

    def _settle(self, cur, batch_id: str, now: datetime) -> None:
        """Finish a running batch once nothing is pending."""
        cur.execute("""
            UPDATE ingest_batches
            SET status = CASE WHEN failed > 0 THEN %s ELSE %s END,
                finished_at = %s,
                updated_at = %s
            WHERE id = %s AND status = %s AND pending <= 0
        """, (
            BatchStatus.PARTIAL_FAILURE.value, BatchStatus.COMPLETE.value,
            now, now, batch_id, BatchStatus.RUNNING.value,
        ))

    def cancel(self, batch_id: str) -> bool:
        now = datetime.utcnow()
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("""
                UPDATE ingest_batches
                SET status = %s, finished_at = %s, updated_at = %s
                WHERE id = %s AND status = %s
            """, (BatchStatus.CANCELLED.value, now, now, batch_id, BatchStatus.RUNNING.value))
            return cur.rowcount > 0

    def list_batches(self, limit: int = 5, failed_only: bool = False,
                     active_only: bool = False) -> List[Batch]:
        """Most recent batches first; a pure read."""
        query = f"SELECT {_COLUMNS} FROM ingest_batches"
        clauses = []
        if failed_only:
            clauses.append("failed > 0")
        if active_only:
            clauses.append("pending > 0")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id"
        params: list = []
        if limit and limit > 0:
            query += " LIMIT %s"
            params.append(limit)

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            return [Batch.from_db_row(row) for row in cur.fetchall()]

    def count_unfinished(self) -> int:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM ingest_batches WHERE status = %s", (BatchStatus.RUNNING.value,))
            return int(cur.fetchone()[0])

    def delete_finished(self, older_than: datetime, include_failed: bool = False) -> int:
        """Remove finished batches whose finish time precedes ``older_than``."""
        statuses = [BatchStatus.COMPLETE.value]
        if include_failed:
            statuses += [BatchStatus.PARTIAL_FAILURE.value, BatchStatus.CANCELLED.value]

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                DELETE FROM ingest_batches
                WHERE status IN ({', '.join(['%s'] * len(statuses))})
                  AND finished_at IS NOT NULL AND finished_at < %s
            """, (*statuses, older_than))
            deleted = cur.rowcount
        logger.info("Deleted %d finished batches older than %s", deleted, older_than)
        return deleted
