"""Structured logging for tickersync ingestion."""
import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, Protocol, runtime_checkable


@runtime_checkable
class ObservabilityPort(Protocol):
    """
    Write-only logging capability handed to each component.

    Components never reach for a module-level logger for their operational
    events; they receive one of these so tests can capture or silence them.
    """

    def info(self, message: str, **kwargs: Any) -> None:
        ...

    def warn(self, message: str, **kwargs: Any) -> None:
        ...

    def error(self, message: str, **kwargs: Any) -> None:
        ...

    def debug(self, message: str, **kwargs: Any) -> None:
        ...


class StructuredLogger:
    """
    JSON-structured logger for production ingestion.

    Outputs log lines in JSON format for easy parsing:
    {
        "time": "2025-01-13T14:00:00.000Z",
        "level": "INFO",
        "message": "work_unit_succeeded",
        "symbol": "AAPL",
        "series_kind": "price_history",
        "from": "2024-05-22",
        "to": "2024-06-05",
        "accepted": 10
    }
    """

    def __init__(self, name: str, level: int = logging.INFO):
        """Initialize structured logger."""
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(level)
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
        self.logger.propagate = False

    def _log(self, level: str, message: str, **kwargs: Any) -> None:
        """Log structured message. Emission problems are never raised to callers."""
        log_entry = {
            'time': datetime.utcnow().isoformat() + 'Z',
            'level': level,
            'message': message
        }

        log_entry.update(kwargs)

        try:
            json_str = json.dumps(log_entry, default=str)
        except (TypeError, ValueError):
            json_str = json.dumps({k: str(v) for k, v in log_entry.items()})

        try:
            if level == 'ERROR':
                self.logger.error(json_str)
            elif level == 'WARN':
                self.logger.warning(json_str)
            elif level == 'DEBUG':
                self.logger.debug(json_str)
            else:
                self.logger.info(json_str)
        except Exception:  # pragma: no cover
            pass

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        self._log('INFO', message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        self._log('ERROR', message, **kwargs)

    def warn(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        self._log('WARN', message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""
        self._log('DEBUG', message, **kwargs)

    def bind(self, **kwargs: Any) -> 'BoundLogger':
        """Return a bound logger with context."""
        return BoundLogger(self, kwargs)

    def set_level(self, level: int) -> None:
        """Set log level."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)


class BoundLogger:
    """Port wrapper that stamps every event with a fixed context (batch, unit, worker)."""

    def __init__(self, logger: ObservabilityPort, context: Dict[str, Any]):
        self.logger = logger
        self.context = context

    def _emit(self, level: str, message: str, kwargs: Dict[str, Any]) -> None:
        getattr(self.logger, level)(message, **{**self.context, **kwargs})

    def info(self, message: str, **kwargs: Any) -> None:
        self._emit('info', message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._emit('error', message, kwargs)

    def warn(self, message: str, **kwargs: Any) -> None:
        self._emit('warn', message, kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._emit('debug', message, kwargs)

    def bind(self, **kwargs: Any) -> 'BoundLogger':
        return BoundLogger(self.logger, {**self.context, **kwargs})


class NullLogger:
    """Observability port that discards everything."""

    def info(self, message: str, **kwargs: Any) -> None:
        pass

    def warn(self, message: str, **kwargs: Any) -> None:
        pass

    def error(self, message: str, **kwargs: Any) -> None:
        pass

    def debug(self, message: str, **kwargs: Any) -> None:
        pass

    def bind(self, **kwargs: Any) -> 'NullLogger':
        return self


def get_logger(name: str, level: int = logging.INFO) -> StructuredLogger:
    """JSON logger writing to stdout; handlers are attached once per name."""
    return StructuredLogger(name, level)


def safe_emit(port: ObservabilityPort, level: str, message: str, **kwargs: Any) -> None:
    """Call a port method, swallowing failures from third-party port implementations."""
    try:
        getattr(port, level)(message, **kwargs)
    except Exception:  # pragma: no cover
        pass
