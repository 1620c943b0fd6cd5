"""Sync engine, mutations, drafts, status and scheduling services."""

from invoice_sync.services.drafts import Draft, DraftAutosaver, DraftStore
from invoice_sync.services.mutations import MutationService
from invoice_sync.services.scheduler import Scheduler, ThreadingScheduler, VirtualScheduler
from invoice_sync.services.status import EngineState, SyncStatus, SyncStatusStore
from invoice_sync.services.sync_engine import SyncEngine, SyncResult

__all__ = [
    "Draft",
    "DraftAutosaver",
    "DraftStore",
    "EngineState",
    "MutationService",
    "Scheduler",
    "SyncEngine",
    "SyncResult",
    "SyncStatus",
    "SyncStatusStore",
    "ThreadingScheduler",
    "VirtualScheduler",
]
