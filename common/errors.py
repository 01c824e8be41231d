"""Exception hierarchy for the sync engine."""


class IngestError(Exception):
    """Base class for sync engine errors."""


class ConfigurationError(IngestError):
    """Missing or invalid configuration (API key, database, thresholds)."""


class EntityNotFoundError(IngestError):
    """A ticker id or symbol could not be resolved in the store."""

    def __init__(self, ref):
        super().__init__(f"Ticker not found: {ref}")
        self.ref = ref


class StoreError(IngestError):
    """Persistence failure that should fail the current work unit."""


class QueueError(IngestError):
    """Queue backend unavailable or returned malformed payloads."""


class PlanningAnomaly(IngestError):
    """Planning refused an entity for this run (span beyond the safety bound)."""
