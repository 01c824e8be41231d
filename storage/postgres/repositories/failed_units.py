"""Repository for terminally failed work units awaiting review or requeue."""
import logging
from datetime import datetime
from typing import List, Optional

from common.models.data_models import FailedUnit, SeriesKind, WorkUnit

logger = logging.getLogger(__name__)

_COLUMNS = "unit_key, ticker_id, ticker, series_kind, payload, reason, attempts, batch_id, failed_at"


class FailedUnitRepository:
    """One row per unit key; a repeated failure refreshes the reason and time."""

    def __init__(self, pool):
        self.pool = pool

    def record(self, unit: WorkUnit, reason: str, symbol: Optional[str] = None) -> None:
        now = datetime.utcnow()
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(f"""
                INSERT INTO failed_work_units ({_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (unit_key) DO UPDATE SET
                    payload = excluded.payload,
                    reason = excluded.reason,
                    attempts = excluded.attempts,
                    batch_id = excluded.batch_id,
                    failed_at = excluded.failed_at
            """, (
                unit.key, unit.window.entity_id, symbol, unit.window.series_kind.value,
                unit.to_json(), reason[:1000], unit.attempts, unit.batch_id, now,
            ))

    def list_failed(self, series_kind: Optional[SeriesKind] = None, limit: int = 0) -> List[FailedUnit]:
        query = f"SELECT {_COLUMNS} FROM failed_work_units"
        params: list = []
        if series_kind:
            query += " WHERE series_kind = %s"
            params.append(series_kind.value)
        query += " ORDER BY failed_at, unit_key"
        if limit and limit > 0:
            query += " LIMIT %s"
            params.append(limit)

        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            return [FailedUnit.from_db_row(row) for row in cur.fetchall()]

    def count(self) -> int:
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) FROM failed_work_units")
            return int(cur.fetchone()[0])

    def delete(self, unit_keys: List[str]) -> int:
        if not unit_keys:
            return 0
        with self.pool.get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                f"DELETE FROM failed_work_units WHERE unit_key IN ({', '.join(['%s'] * len(unit_keys))})",
                list(unit_keys),
            )
            return cur.rowcount
