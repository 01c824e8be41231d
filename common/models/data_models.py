"""
Data models for the sync engine.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional


class SeriesKind(str, Enum):
    """Kinds of upstream series the engine knows how to sync."""

    PRICE_HISTORY = "price_history"
    FUNDAMENTALS = "fundamentals"
    NEWS = "news"
    OVERVIEW = "overview"


class FetchOutcome(str, Enum):
    """Result classification of one logical upstream call."""

    OK = "ok"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"

    @property
    def is_failure(self) -> bool:
        return self is not FetchOutcome.OK


class BatchStatus(str, Enum):
    """Batch lifecycle: running -> complete | partial_failure | cancelled."""

    RUNNING = "running"
    COMPLETE = "complete"
    PARTIAL_FAILURE = "partial_failure"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self is not BatchStatus.RUNNING


class UnitOutcome(str, Enum):
    """What happened to a work unit after one execution attempt."""

    SUCCEEDED = "succeeded"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"


def coerce_date(value: Any) -> Optional[date]:
    """Normalize DATE columns (psycopg2 returns date, sqlite returns text)."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class Entity:
    """An ingestable ticker. Symbols are case-sensitive (ABRpD != ABRPD)."""

    id: int
    symbol: str
    name: Optional[str] = None
    active: bool = True

    @classmethod
    def from_db_row(cls, row) -> Entity:
        return cls(id=int(row[0]), symbol=row[1], name=row[2], active=bool(row[3]))


@dataclass(frozen=True)
class Watermark:
    """Latest date known persisted for (entity, series, resolution)."""

    entity_id: int
    series_kind: SeriesKind
    resolution: str
    watermark: date
    updated_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row) -> Watermark:
        return cls(
            entity_id=int(row[0]),
            series_kind=SeriesKind(row[1]),
            resolution=row[2],
            watermark=coerce_date(row[3]),
            updated_at=coerce_datetime(row[4]),
        )


@dataclass(frozen=True)
class FetchWindow:
    """One bounded upstream request: entity + series + inclusive date range."""

    entity_id: int
    series_kind: SeriesKind
    from_date: date
    to_date: date
    resolution: str = "1d"
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.from_date > self.to_date:
            raise ValueError(f"window from {self.from_date} is after to {self.to_date}")

    @property
    def span_days(self) -> int:
        return (self.to_date - self.from_date).days

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "series_kind": self.series_kind.value,
            "from": self.from_date.isoformat(),
            "to": self.to_date.isoformat(),
            "resolution": self.resolution,
            "params": dict(self.params),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> FetchWindow:
        return cls(
            entity_id=int(data["entity_id"]),
            series_kind=SeriesKind(data["series_kind"]),
            from_date=date.fromisoformat(data["from"]),
            to_date=date.fromisoformat(data["to"]),
            resolution=data.get("resolution", "1d"),
            params=dict(data.get("params") or {}),
        )


@dataclass
class WorkUnit:
    """
    A FetchWindow plus retry state.

    Only plain, JSON-serializable values live here so a unit can cross the
    queue boundary; services are looked up again when the unit executes.
    """

    window: FetchWindow
    batch_id: Optional[str] = None
    attempts: int = 0
    next_allowed_at: Optional[datetime] = None
    # Upstream retry bound of the run that planned the unit
    max_retries: Optional[int] = None

    @property
    def key(self) -> str:
        """Stable identity of the unit, independent of retry state."""
        digest = hashlib.md5(
            json.dumps(self.window.to_dict(), sort_keys=True).encode('utf-8')
        ).hexdigest()
        return f"{self.window.series_kind.value}:{self.window.entity_id}:{digest[:16]}"

    def is_due(self, now: datetime) -> bool:
        return self.next_allowed_at is None or self.next_allowed_at <= now

    def next_attempt(self, backoff_seconds: float, now: datetime) -> WorkUnit:
        """Copy scheduled for another try with exponential backoff."""
        attempts = self.attempts + 1
        delay = backoff_seconds * (2 ** (attempts - 1))
        return replace(self, attempts=attempts, next_allowed_at=now + timedelta(seconds=delay))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window": self.window.to_dict(),
            "batch_id": self.batch_id,
            "attempts": self.attempts,
            "next_allowed_at": self.next_allowed_at.isoformat() if self.next_allowed_at else None,
            "max_retries": self.max_retries,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WorkUnit:
        return cls(
            window=FetchWindow.from_dict(data["window"]),
            batch_id=data.get("batch_id"),
            attempts=int(data.get("attempts", 0)),
            next_allowed_at=coerce_datetime(data.get("next_allowed_at")),
            max_retries=None if data.get("max_retries") is None else int(data["max_retries"]),
        )

    @classmethod
    def from_json(cls, payload: str) -> WorkUnit:
        return cls.from_dict(json.loads(payload))


@dataclass
class PageResult:
    """Records from one upstream page plus the cursor for the next one."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    outcome: FetchOutcome = FetchOutcome.OK
    status_code: Optional[int] = None
    error: Optional[str] = None
    pages: int = 1


@dataclass
class UpsertResult:
    """Accepted (persisted) versus rejected (failed validation) record counts."""

    accepted: int = 0
    rejected: int = 0

    @property
    def fetched(self) -> int:
        return self.accepted + self.rejected

    def __add__(self, other: UpsertResult) -> UpsertResult:
        return UpsertResult(self.accepted + other.accepted, self.rejected + other.rejected)


@dataclass
class Batch:
    """Durable batch lifecycle record owned by the batch monitor."""

    id: str
    name: str
    total: int
    pending: int
    failed: int = 0
    processed: int = 0
    status: BatchStatus = BatchStatus.RUNNING
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def progress(self) -> float:
        """Percentage of units that reached a terminal state."""
        if self.total <= 0:
            return 100.0
        return round((self.processed + self.failed) / self.total * 100, 2)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "total": self.total,
            "pending": self.pending,
            "failed": self.failed,
            "processed": self.processed,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_db_row(cls, row) -> Batch:
        """Create instance from database row."""
        return cls(
            id=row[0],
            name=row[1],
            total=int(row[2]),
            pending=int(row[3]),
            failed=int(row[4]),
            processed=int(row[5]),
            status=BatchStatus(row[6]),
            created_at=coerce_datetime(row[7]),
            updated_at=coerce_datetime(row[8]),
            finished_at=coerce_datetime(row[9]),
        )


@dataclass
class FailedUnit:
    """A terminally failed work unit kept for manual review and requeue."""

    unit_key: str
    entity_id: int
    symbol: Optional[str]
    series_kind: SeriesKind
    unit: WorkUnit
    reason: str
    attempts: int = 0
    batch_id: Optional[str] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row) -> FailedUnit:
        return cls(
            unit_key=row[0],
            entity_id=int(row[1]),
            symbol=row[2],
            series_kind=SeriesKind(row[3]),
            unit=WorkUnit.from_json(row[4]),
            reason=row[5],
            attempts=int(row[6] or 0),
            batch_id=row[7],
            failed_at=coerce_datetime(row[8]),
        )
