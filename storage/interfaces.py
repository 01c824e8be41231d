"""Storage interfaces using Protocol for duck typing."""
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from common.models.data_models import Entity, SeriesKind, UpsertResult


@runtime_checkable
class WatermarkReader(Protocol):
    """What the range planner needs from storage."""

    def get_watermark(self, entity_id: int, series_kind: SeriesKind, resolution: str) -> Optional[date]:
        """
        Latest date known persisted, or None when never synced.
        """
        ...


@runtime_checkable
class RecordStore(WatermarkReader, Protocol):
    """
    Protocol defining the persistence surface used by work-unit execution.

    Any backend with composite-key upserts can implement this interface;
    ``entities`` resolves the entity id a unit carries (``get(entity_id)``).
    """

    entities: Any

    def upsert(self, entity: Entity, series_kind: SeriesKind, resolution: str,
               records: List[Dict[str, Any]], as_of: Optional[date] = None) -> UpsertResult:
        """
        Validate and upsert records.

        Returns:
            UpsertResult with accepted and rejected counts
        """
        ...

    def advance_watermark(self, entity_id: int, series_kind: SeriesKind, resolution: str,
                          to_date: date) -> date:
        """Move the watermark forward (never backward) and return the stored value."""
        ...
