"""
Work Queue Implementations
Durable hand-off of work units between dispatchers and workers.
Supports Redis lists in production and an in-memory deque for tests.
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, List, Optional

import redis

from common.errors import QueueError
from common.models.data_models import WorkUnit

logger = logging.getLogger(__name__)


class WorkQueue(ABC):
    """
    Abstract work queue interface.
    Allows swapping between Redis and in-memory implementations.

    Besides units, the queue carries the worker restart marker: a
    timestamp any worker started before must exit at its next check.
    """

    @abstractmethod
    def enqueue(self, unit: WorkUnit) -> None:
        """Append one unit to the tail"""

    def enqueue_many(self, units: Iterable[WorkUnit]) -> int:
        count = 0
        for unit in units:
            self.enqueue(unit)
            count += 1
        return count

    @abstractmethod
    def dequeue(self) -> Optional[WorkUnit]:
        """Pop the head without blocking; None when empty"""

    @abstractmethod
    def size(self) -> int:
        """Number of units waiting"""

    @abstractmethod
    def signal_restart(self, timestamp: Optional[float] = None) -> float:
        """Record a restart marker; returns the stored timestamp"""

    @abstractmethod
    def last_restart(self) -> Optional[float]:
        """Timestamp of the latest restart marker, if any"""

    def close(self) -> None:
        pass


class RedisWorkQueue(WorkQueue):
    """
    Redis list-backed queue. Units are JSON payloads pushed with RPUSH
    and popped with LPOP, so delivery order is FIFO.
    """

    def __init__(self, host: str = 'localhost', port: int = 6379, db: int = 0,
                 password: Optional[str] = None, queue_name: str = 'tickersync:work_units',
                 restart_key: str = 'tickersync:workers:restart', client=None):
        """
        Initialize Redis work queue.

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password (optional)
            queue_name: List key holding unit payloads
            restart_key: Key holding the restart marker timestamp
            client: Pre-built redis client (tests)
        """
        self.queue_name = queue_name
        self.restart_key = restart_key
        self.redis_client = client or redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=5,
        )

        if client is None:
            try:
                self.redis_client.ping()
            except redis.RedisError as e:
                raise QueueError(f"Redis unavailable at {host}:{port}: {e}") from e
            logger.info(f"✓ Redis work queue connected: {host}:{port} ({queue_name})")

    @classmethod
    def from_config(cls, config) -> 'RedisWorkQueue':
        """Build from a RedisConfig."""
        return cls(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            queue_name=config.queue_name,
            restart_key=config.restart_key,
        )

    def enqueue(self, unit: WorkUnit) -> None:
        try:
            self.redis_client.rpush(self.queue_name, unit.to_json())
        except redis.RedisError as e:
            raise QueueError(f"Failed to enqueue {unit.key}: {e}") from e

    def enqueue_many(self, units: Iterable[WorkUnit]) -> int:
        payloads: List[str] = [unit.to_json() for unit in units]
        if not payloads:
            return 0
        try:
            self.redis_client.rpush(self.queue_name, *payloads)
        except redis.RedisError as e:
            raise QueueError(f"Failed to enqueue {len(payloads)} units: {e}") from e
        return len(payloads)

    def dequeue(self) -> Optional[WorkUnit]:
        try:
            payload = self.redis_client.lpop(self.queue_name)
        except redis.RedisError as e:
            raise QueueError(f"Failed to dequeue from {self.queue_name}: {e}") from e
        if payload is None:
            return None
        try:
            return WorkUnit.from_json(payload)
        except (ValueError, KeyError, TypeError) as e:
            raise QueueError(f"Malformed work unit payload dropped: {payload[:200]!r} ({e})") from e

    def size(self) -> int:
        try:
            return int(self.redis_client.llen(self.queue_name))
        except redis.RedisError as e:
            raise QueueError(f"Failed to read backlog of {self.queue_name}: {e}") from e

    def signal_restart(self, timestamp: Optional[float] = None) -> float:
        timestamp = time.time() if timestamp is None else timestamp
        try:
            self.redis_client.set(self.restart_key, repr(float(timestamp)))
        except redis.RedisError as e:
            raise QueueError(f"Failed to write restart marker: {e}") from e
        return timestamp

    def last_restart(self) -> Optional[float]:
        try:
            value = self.redis_client.get(self.restart_key)
        except redis.RedisError as e:
            raise QueueError(f"Failed to read restart marker: {e}") from e
        return float(value) if value is not None else None

    def close(self) -> None:
        self.redis_client.close()


class InMemoryWorkQueue(WorkQueue):
    """
    In-memory work queue for testing and single-process runs.
    Not suitable for production across processes.
    """

    def __init__(self):
        self._units = deque()
        self._restart: Optional[float] = None
        self._lock = threading.Lock()

    def enqueue(self, unit: WorkUnit) -> None:
        # Serialize so consumers never share a mutable unit with the producer
        payload = unit.to_json()
        with self._lock:
            self._units.append(payload)

    def dequeue(self) -> Optional[WorkUnit]:
        with self._lock:
            if not self._units:
                return None
            payload = self._units.popleft()
        return WorkUnit.from_json(payload)

    def size(self) -> int:
        with self._lock:
            return len(self._units)

    def signal_restart(self, timestamp: Optional[float] = None) -> float:
        self._restart = time.time() if timestamp is None else timestamp
        return self._restart

    def last_restart(self) -> Optional[float]:
        return self._restart

    def clear(self):
        """Clear all queued units"""
        with self._lock:
            self._units.clear()
