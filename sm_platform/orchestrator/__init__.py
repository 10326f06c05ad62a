# Public surface of the orchestrator package.
from ._types import (
    CancelToken,
    CleanupResult,
    FetchFilter,
    Page,
    RunReport,
    RunState,
    SyncMode,
    SyncResult,
    SyncWindow,
)
from ._state_store import SyncState, SyncStateStore
from ._fetcher import EntityFetcher
from ._syncer import EntitySyncer
from ._cleanup import CleanupService
from .facade import SyncOrchestrator

__all__ = [
    "SyncOrchestrator",
    "SyncStateStore",
    "SyncState",
    "EntityFetcher",
    "EntitySyncer",
    "CleanupService",
    "CancelToken",
    "CleanupResult",
    "FetchFilter",
    "Page",
    "RunReport",
    "RunState",
    "SyncMode",
    "SyncResult",
    "SyncWindow",
]
