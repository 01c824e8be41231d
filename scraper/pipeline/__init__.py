"""
Pipeline components: planning, batching, queueing and execution of work units
"""
from .batcher import build_work_units, chunk_units
from .range_planner import RangePlanner
from .work_queue import WorkQueue, RedisWorkQueue, InMemoryWorkQueue
from .batch_monitor import BatchMonitor
from .executor import WorkUnitExecutor
from .dispatcher import BatchDispatcher, DispatchMode

__all__ = [
    'build_work_units',
    'chunk_units',
    'RangePlanner',
    'WorkQueue',
    'RedisWorkQueue',
    'InMemoryWorkQueue',
    'BatchMonitor',
    'WorkUnitExecutor',
    'BatchDispatcher',
    'DispatchMode',
]
