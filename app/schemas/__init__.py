from .article_sync import (
    SyncScope,
    DuplicatePolicy,
    RunState,
    DateRange,
    SyncOptions,
    SyncStats,
    ItemError,
    SyncResult,
    SyncStatus,
    LockInfo,
    TaskStatus
)

__all__ = [
    "SyncScope",
    "DuplicatePolicy",
    "RunState",
    "DateRange",
    "SyncOptions",
    "SyncStats",
    "ItemError",
    "SyncResult",
    "SyncStatus",
    "LockInfo",
    "TaskStatus"
]
