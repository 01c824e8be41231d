"""
Configuration settings for the sync engine.
Centralizes all configurable parameters for clients, workers and planners.
"""
import os
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Dict, Optional
from dotenv import load_dotenv

from common.models.data_models import SeriesKind

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_date(name: str, default: str) -> date:
    return date.fromisoformat(os.getenv(name, default))


@dataclass
class HTTPConfig:
    """HTTP connection pool and retry configuration"""
    max_connections: int = 50
    max_retries: Optional[int] = None
    timeout: Optional[int] = None
    rate_limit: Optional[int] = None
    retry_base_seconds: float = 2.0

    def __post_init__(self):
        if self.max_retries is None:
            self.max_retries = _env_int('POLYGON_API_RETRIES', 3)
        if self.timeout is None:
            self.timeout = _env_int('POLYGON_API_TIMEOUT', 30)
        if self.rate_limit is None:
            self.rate_limit = _env_int('POLYGON_RATE_LIMIT', 5)


@dataclass
class RedisConfig:
    """Redis configuration for the work queue and restart marker"""
    host: Optional[str] = None
    port: Optional[int] = None
    db: int = 0
    password: Optional[str] = None
    queue_name: str = 'tickersync:work_units'
    restart_key: str = 'tickersync:workers:restart'

    def __post_init__(self):
        self.host = self.host or os.getenv('REDIS_HOST', 'localhost')
        self.port = self.port or _env_int('REDIS_PORT', 6379)
        self.db = self.db or _env_int('REDIS_DB', 0)
        if self.password is None:
            self.password = os.getenv('REDIS_PASSWORD')


@dataclass
class DatabaseConfig:
    """Database configuration (PostgreSQL, or SQLite when a file path is set)"""
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    sqlite_path: Optional[str] = None

    def __post_init__(self):
        self.host = self.host or os.getenv('DB_HOST', 'localhost')
        self.port = self.port or int(os.getenv('DB_PORT', '5432'))
        self.database = self.database or os.getenv('DB_NAME', 'tickersync')
        self.user = self.user or os.getenv('DB_USER', 'postgres')
        self.password = self.password or os.getenv('DB_PASSWORD')
        self.sqlite_path = self.sqlite_path or os.getenv('DB_SQLITE_PATH')

    @property
    def use_sqlite(self) -> bool:
        return bool(self.sqlite_path)


@dataclass
class PolygonConfig:
    """Polygon.io API configuration"""
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    def __post_init__(self):
        if self.api_key is None:
            self.api_key = os.getenv('POLYGON_API_KEY')
        if self.base_url is None:
            self.base_url = os.getenv('POLYGON_API_BASE', 'https://api.polygon.io').rstrip('/')


@dataclass
class WorkerConfig:
    """Queue worker limits (mirrors the supervisor-managed worker processes)"""
    sleep: Optional[int] = None
    backoff: Optional[int] = None
    max_jobs: Optional[int] = None
    max_time: Optional[int] = None
    tries: Optional[int] = None
    timeout: Optional[int] = None

    def __post_init__(self):
        if self.sleep is None:
            self.sleep = _env_int('QUEUE_WORKER_SLEEP', 3)
        if self.backoff is None:
            self.backoff = _env_int('QUEUE_WORKER_BACKOFF', 5)
        if self.max_jobs is None:
            self.max_jobs = _env_int('QUEUE_WORKER_MAX_JOBS', 25)
        if self.max_time is None:
            self.max_time = _env_int('QUEUE_WORKER_MAX_TIME', 240)
        if self.tries is None:
            self.tries = _env_int('QUEUE_WORKER_TRIES', 3)
        if self.timeout is None:
            self.timeout = _env_int('QUEUE_WORKER_TIMEOUT', 120)


@dataclass
class SupervisorConfig:
    """Backlog thresholds for the queue supervisor"""
    backlog_soft: Optional[int] = None
    backlog_hard: Optional[int] = None
    restart_minutes: Optional[int] = None
    interval_seconds: int = 60

    def __post_init__(self):
        if self.backlog_soft is None:
            self.backlog_soft = _env_int('QUEUE_SUPERVISOR_BACKLOG_SOFT', 1000)
        if self.backlog_hard is None:
            self.backlog_hard = _env_int('QUEUE_SUPERVISOR_BACKLOG_HARD', 5000)
        if self.restart_minutes is None:
            self.restart_minutes = _env_int('QUEUE_SUPERVISOR_RESTART_MINUTES', 60)
        if self.backlog_soft > self.backlog_hard:
            raise ValueError(
                f"backlog_soft ({self.backlog_soft}) must not exceed backlog_hard ({self.backlog_hard})"
            )


@dataclass(frozen=True)
class SyncConfig:
    """
    Immutable tunables for one planning/dispatch run.

    Passed explicitly into the planner and dispatcher. Invalid values raise
    ValueError at construction; window and redundancy are clamped to their
    minimums the same way the ingest commands clamp their options.
    """
    batch_size: int = 200
    sleep_seconds: float = 5.0
    window_days: int = 365
    redundancy_days: int = 365
    historical_floor: date = date(2020, 1, 1)
    max_retries: int = 3
    max_span_days: int = 7300

    def __post_init__(self):
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.sleep_seconds < 0:
            raise ValueError(f"sleep_seconds must be >= 0, got {self.sleep_seconds}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.max_span_days < 1:
            raise ValueError(f"max_span_days must be >= 1, got {self.max_span_days}")
        if not isinstance(self.historical_floor, date):
            raise ValueError(f"historical_floor must be a date, got {self.historical_floor!r}")
        # frozen dataclass: clamp through object.__setattr__
        if self.window_days < 1:
            object.__setattr__(self, 'window_days', 1)
        if self.redundancy_days < 0:
            object.__setattr__(self, 'redundancy_days', 0)

    def with_overrides(self, **overrides) -> 'SyncConfig':
        """Return a copy with non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def for_series(cls, kind: SeriesKind) -> 'SyncConfig':
        """Per-series defaults, overridable through the environment."""
        batch_size = _env_int('SYNC_BATCH_SIZE', 200)
        sleep_seconds = float(os.getenv('SYNC_SLEEP_SECONDS', '5'))
        max_retries = _env_int('POLYGON_API_RETRIES', 3)
        max_span_days = _env_int('SYNC_MAX_SPAN_DAYS', 7300)

        if kind == SeriesKind.FUNDAMENTALS:
            window, redundancy = _env_int('FUNDAMENTALS_WINDOW_DAYS', 365), _env_int('FUNDAMENTALS_REDUNDANCY_DAYS', 365)
            floor = _env_date('FUNDAMENTALS_MIN_DATE', '2015-01-01')
        elif kind == SeriesKind.NEWS:
            window, redundancy = _env_int('NEWS_WINDOW_DAYS', 30), _env_int('NEWS_REDUNDANCY_DAYS', 3)
            floor = _env_date('NEWS_MIN_DATE', '2024-01-01')
        elif kind == SeriesKind.OVERVIEW:
            window, redundancy = 1, 0
            floor = _env_date('PRICE_HISTORY_MIN_DATE', '2020-01-01')
        else:
            window, redundancy = _env_int('PRICE_HISTORY_WINDOW_DAYS', 365), _env_int('PRICE_HISTORY_REDUNDANCY_DAYS', 5)
            floor = _env_date('PRICE_HISTORY_MIN_DATE', '2020-01-01')

        return cls(
            batch_size=batch_size,
            sleep_seconds=sleep_seconds,
            window_days=window,
            redundancy_days=redundancy,
            historical_floor=floor,
            max_retries=max_retries,
            max_span_days=max_span_days,
        )


@dataclass
class IngestConfig:
    """Complete sync engine configuration"""
    http: HTTPConfig
    redis: RedisConfig
    database: DatabaseConfig
    polygon: PolygonConfig
    worker: WorkerConfig
    supervisor: SupervisorConfig
    sync: Dict[SeriesKind, SyncConfig] = field(default_factory=dict)
    debug: bool = False

    def sync_for(self, kind: SeriesKind) -> SyncConfig:
        if kind not in self.sync:
            self.sync[kind] = SyncConfig.for_series(kind)
        return self.sync[kind]

    @classmethod
    def default(cls):
        """Create default configuration"""
        return cls(
            http=HTTPConfig(),
            redis=RedisConfig(),
            database=DatabaseConfig(),
            polygon=PolygonConfig(),
            worker=WorkerConfig(),
            supervisor=SupervisorConfig(),
            debug=os.getenv('TICKERSYNC_DEBUG', 'false').lower() == 'true'
        )


# Polygon aggregate parameters per stored resolution
RESOLUTION_CONFIGS = {
    '1m': (1, 'minute'),
    '5m': (5, 'minute'),
    '15m': (15, 'minute'),
    '1h': (1, 'hour'),
    '1d': (1, 'day'),
    '1w': (1, 'week'),
}

FUNDAMENTAL_TIMEFRAMES = ('quarterly', 'annual', 'ttm')
