"""
Range Planner
Turns (entity, series, watermark, config) into bounded fetch windows.

Windows cover [watermark - redundancy, today] (or [floor, today] for a
never-synced series), clamped to the historical floor, and sliced into
consecutive inclusive chunks of at most ``window_days`` days.
"""
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional

from common.config.settings import SyncConfig
from common.errors import PlanningAnomaly
from common.models.data_models import Entity, FetchWindow, SeriesKind
from scraper.utils.structured_logging import NullLogger, ObservabilityPort, safe_emit
from storage.interfaces import WatermarkReader

# Financials filters accepted as explicit bounds
_LOWER_FILTERS = ('filing_date.gte', 'filing_date.gt')
_UPPER_FILTERS = ('filing_date.lte', 'filing_date.lt')


def _parse_filter_date(key: str, value: Any) -> date:
    parsed = value if isinstance(value, date) else date.fromisoformat(str(value)[:10])
    # Strict bounds exclude the named day
    if key.endswith('.gt'):
        return parsed + timedelta(days=1)
    if key.endswith('.lt'):
        return parsed - timedelta(days=1)
    return parsed


class RangePlanner:
    """
    Plans fetch windows from the stored watermark.

    Pure apart from one watermark read per call; nothing is written.
    """

    def __init__(self, watermarks: WatermarkReader, obs: Optional[ObservabilityPort] = None,
                 today: Optional[Callable[[], date]] = None):
        """
        Args:
            watermarks: Anything exposing get_watermark (normally IngestStore)
            obs: Observability port for plan decisions
            today: Clock returning the current date (UTC); injectable for tests
        """
        self.watermarks = watermarks
        self.obs = obs or NullLogger()
        self._today = today or date.today

    def plan_windows(
        self,
        entity: Entity,
        series_kind: SeriesKind,
        config: SyncConfig,
        resolution: str = '1d',
        params: Optional[Dict[str, Any]] = None,
        explicit_from: Optional[date] = None,
        explicit_to: Optional[date] = None,
    ) -> List[FetchWindow]:
        """
        Plan the windows needed to bring a series up to date.

        Args:
            entity: Ticker to plan for
            series_kind: Series being synced
            config: Window/redundancy/floor settings for this run
            resolution: Bar resolution, or fundamentals timeframe
            params: Extra request parameters copied onto every window;
                ``params['filters']`` with filing-date bounds counts as
                an explicit range
            explicit_from: Caller-supplied lower bound
            explicit_to: Caller-supplied upper bound

        Returns:
            Ordered, non-overlapping windows; empty when already current

        Raises:
            PlanningAnomaly: the span exceeds ``config.max_span_days``; the
                caller skips this entity for the run
        """
        params = dict(params or {})
        today = self._today()

        explicit = self._explicit_bounds(params, explicit_from, explicit_to)
        if explicit is not None:
            start, end = explicit
            start = start or config.historical_floor
            end = end or today
            if start > end:
                safe_emit(self.obs, 'warn', 'plan_explicit_range_empty',
                          symbol=entity.symbol, series_kind=series_kind.value,
                          start=start.isoformat(), end=end.isoformat())
                return []
            # Explicit filters are honored as one window, not sliced
            return [FetchWindow(entity.id, series_kind, start, end, resolution, params)]

        watermark = self.watermarks.get_watermark(entity.id, series_kind, resolution)

        if series_kind == SeriesKind.OVERVIEW:
            return self._plan_snapshot(entity, series_kind, resolution, params, watermark, today)

        if watermark is not None:
            start = watermark - timedelta(days=config.redundancy_days)
        else:
            start = config.historical_floor
        if start < config.historical_floor:
            start = config.historical_floor
        end = today

        if start > end:
            safe_emit(self.obs, 'debug', 'plan_up_to_date',
                      symbol=entity.symbol, series_kind=series_kind.value,
                      watermark=watermark.isoformat() if watermark else None)
            return []

        if (end - start).days > config.max_span_days:
            safe_emit(self.obs, 'warn', 'plan_span_exceeded',
                      symbol=entity.symbol, series_kind=series_kind.value,
                      start=start.isoformat(), end=end.isoformat(),
                      max_span_days=config.max_span_days)
            raise PlanningAnomaly(
                f"{entity.symbol} {series_kind.value}/{resolution}: span {(end - start).days}d "
                f"exceeds {config.max_span_days}d"
            )

        windows: List[FetchWindow] = []
        cursor = start
        while cursor <= end:
            to_date = min(cursor + timedelta(days=config.window_days - 1), end)
            windows.append(FetchWindow(entity.id, series_kind, cursor, to_date, resolution, dict(params)))
            cursor = to_date + timedelta(days=1)

        safe_emit(self.obs, 'debug', 'plan_windows',
                  symbol=entity.symbol, series_kind=series_kind.value,
                  windows=len(windows), start=start.isoformat(), end=end.isoformat(),
                  watermark=watermark.isoformat() if watermark else None)
        return windows

    def _plan_snapshot(self, entity: Entity, series_kind: SeriesKind, resolution: str,
                       params: Dict[str, Any], watermark: Optional[date],
                       today: date) -> List[FetchWindow]:
        """Snapshot series are fetched at most once per day."""
        if watermark is not None and watermark >= today:
            return []
        return [FetchWindow(entity.id, series_kind, today, today, resolution, params)]

    @staticmethod
    def _explicit_bounds(params: Dict[str, Any], explicit_from: Optional[date],
                         explicit_to: Optional[date]):
        """(from, to) when the caller pinned the range, else None."""
        filters = params.get('filters') or {}
        start, end = explicit_from, explicit_to
        for key in _LOWER_FILTERS:
            if filters.get(key):
                start = _parse_filter_date(key, filters[key])
        for key in _UPPER_FILTERS:
            if filters.get(key):
                end = _parse_filter_date(key, filters[key])
        if start is None and end is None:
            return None
        return start, end
