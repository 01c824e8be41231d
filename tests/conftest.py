"""Test fixtures for tickersync tests."""
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit

import pytest

from common.errors import StoreError
from common.models.data_models import PageResult
from scraper.clients import PolygonClient
from scraper.utils.structured_logging import BoundLogger
from storage.postgres.store import IngestStore
from storage.sqlite.pool import SQLiteConnectionPool


# Mock classes (importable for direct instantiation in tests)
class FakeResponse:
    """Minimal stand-in for requests.Response."""

    INVALID_JSON = object()

    def __init__(self, status_code: int = 200, payload: Any = None,
                 headers: Optional[Dict[str, str]] = None, text: str = ''):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.headers = headers or {}
        self.text = text or (json.dumps(payload) if isinstance(payload, (dict, list)) else '')

    def json(self):
        if self._payload is FakeResponse.INVALID_JSON:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self._payload


def ok(results, next_url: Optional[str] = None) -> FakeResponse:
    payload = {'status': 'OK', 'results': results}
    if next_url:
        payload['next_url'] = next_url
    return FakeResponse(200, payload)


class FakeSession:
    """
    Fake requests session.

    Either replays a scripted list of responses (exceptions are raised) or
    routes every call through ``handler(url, params)``.
    """

    def __init__(self, responses: Optional[List[Any]] = None,
                 handler: Optional[Callable[[str, Dict[str, Any]], Any]] = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append({'url': url, 'params': dict(params or {}), 'timeout': timeout})
        if self.handler is not None:
            response = self.handler(url, dict(params or {}))
        else:
            if not self.responses:
                raise AssertionError(f"Unexpected request: {url}")
            response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def paths(self) -> List[str]:
        return [urlsplit(call['url']).path for call in self.calls]

    def close(self):
        self.closed = True


class RecordingLogger:
    """Observability port that keeps every event for assertions."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def _record(self, level: str, message: str, **kwargs: Any) -> None:
        self.events.append({'level': level, 'message': message, **kwargs})

    def info(self, message: str, **kwargs: Any) -> None:
        self._record('INFO', message, **kwargs)

    def warn(self, message: str, **kwargs: Any) -> None:
        self._record('WARN', message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._record('ERROR', message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._record('DEBUG', message, **kwargs)

    def bind(self, **kwargs: Any) -> BoundLogger:
        return BoundLogger(self, kwargs)

    def messages(self, level: Optional[str] = None) -> List[str]:
        return [e['message'] for e in self.events if level is None or e['level'] == level]


class BrokenLogger:
    """Observability port whose every call raises."""

    def _boom(self, message: str, **kwargs: Any) -> None:
        raise RuntimeError("log sink down")

    info = warn = error = debug = _boom

    def bind(self, **kwargs: Any) -> 'BrokenLogger':
        return self


class SleepRecorder:
    """Sleep replacement recording requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeRedis:
    """Just enough of redis.Redis for the work queue."""

    def __init__(self):
        self.lists: Dict[str, List[str]] = {}
        self.values: Dict[str, str] = {}
        self.closed = False

    def rpush(self, key, *values):
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    def lpop(self, key):
        items = self.lists.get(key) or []
        return items.pop(0) if items else None

    def llen(self, key):
        return len(self.lists.get(key) or [])

    def set(self, key, value):
        self.values[key] = value
        return True

    def get(self, key):
        return self.values.get(key)

    def close(self):
        self.closed = True


class StubSyncClient:
    """
    Sync client returning scripted PageResults.

    ``results`` maps a ticker symbol to a list of results (or exceptions)
    consumed per call; the last entry repeats. Unknown symbols get an
    empty OK page.
    """

    def __init__(self, results: Optional[Dict[str, List[Any]]] = None):
        self.results = {symbol: list(items) for symbol, items in (results or {}).items()}
        self.calls: List[Any] = []
        self.retry_bounds: List[Optional[int]] = []

    def fetch_window(self, entity, window, max_retries=None):
        self.calls.append((entity.symbol, window))
        self.retry_bounds.append(max_retries)
        items = self.results.get(entity.symbol)
        if not items:
            return PageResult()
        result = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(result, Exception):
            raise result
        return result


def make_client(session: FakeSession, sleep: Optional[SleepRecorder] = None,
                obs=None, max_retries: int = 3) -> PolygonClient:
    return PolygonClient(
        api_key='test-key',
        rate_limit=0,
        max_retries=max_retries,
        retry_base_seconds=2.0,
        session=session,
        sleep=sleep or SleepRecorder(),
        obs=obs,
    )


def epoch_ms(year: int, month: int, day: int) -> int:
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp() * 1000)


def make_bar(year: int, month: int, day: int, price: float = 100.0, **overrides) -> Dict[str, Any]:
    bar = {
        't': epoch_ms(year, month, day),
        'o': price, 'h': price + 1, 'l': price - 1, 'c': price + 0.5,
        'v': 10000, 'vw': price + 0.25, 'n': 42,
    }
    bar.update(overrides)
    return bar


def new_store() -> IngestStore:
    return IngestStore(SQLiteConnectionPool(':memory:'))


def break_watermarks(store: IngestStore, *entity_ids: int) -> None:
    """Make advance_watermark raise StoreError for the given entity ids."""
    advance = store.advance_watermark

    def guarded(entity_id, *args, **kwargs):
        if entity_id in entity_ids:
            raise StoreError("server closed the connection unexpectedly")
        return advance(entity_id, *args, **kwargs)

    store.advance_watermark = guarded


# Fixtures
@pytest.fixture
def store():
    """Provide an in-memory SQLite store with the full schema."""
    s = new_store()
    yield s
    s.close()


@pytest.fixture
def obs():
    return RecordingLogger()


@pytest.fixture
def sleeper():
    return SleepRecorder()

