from .prefetch import PrefetchManager, PrefetchReport, PrefetchStatus
from .store import CheckpointStore, SyncState, TokenStore
from .sync import SYNC_JOB_KIND, TokenSyncEngine

__all__ = [
    "CheckpointStore",
    "PrefetchManager",
    "PrefetchReport",
    "PrefetchStatus",
    "SYNC_JOB_KIND",
    "SyncState",
    "TokenStore",
    "TokenSyncEngine",
]
