"""Turns planned windows into work units and groups them into batches."""
from typing import Iterable, Iterator, List

from common.models.data_models import FetchWindow, WorkUnit


def build_work_units(windows: Iterable[FetchWindow]) -> List[WorkUnit]:
    return [WorkUnit(window=window) for window in windows]


def chunk_units(units: Iterable[WorkUnit], batch_size: int) -> Iterator[List[WorkUnit]]:
    """
    Yield lists of at most ``batch_size`` units, preserving order.

    Consumes ``units`` lazily so planning for the next entity can overlap
    with dispatch of a full chunk.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")

    buffer: List[WorkUnit] = []
    for unit in units:
        buffer.append(unit)
        if len(buffer) >= batch_size:
            yield buffer
            buffer = []
    if buffer:
        yield buffer
