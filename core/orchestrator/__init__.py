"""Orchestration of sync runs."""
from .refresh_all import RefreshAllRunner, RefreshReport, select_steps
from .sync_run import RunSummary, SyncOrchestrator, SyncRequest

__all__ = [
    'RefreshAllRunner',
    'RefreshReport',
    'RunSummary',
    'SyncOrchestrator',
    'SyncRequest',
    'select_steps',
]
