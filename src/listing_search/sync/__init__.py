"""Store-to-index synchronization: notifications, reindex and drift."""

from listing_search.sync.dead_letters import DeadLetterStore
from listing_search.sync.retry import RetryPolicy, calculate_backoff
from listing_search.sync.schemas import (
    DeadLetter,
    DriftRepairReport,
    DriftReport,
    NotificationState,
    ReindexReport,
    SyncStats,
)
from listing_search.sync.service import ChangeSyncService
from listing_search.sync.subscriber import run_drift_monitor, run_sync_subscriber

__all__ = [
    "ChangeSyncService",
    "DeadLetter",
    "DeadLetterStore",
    "DriftRepairReport",
    "DriftReport",
    "NotificationState",
    "ReindexReport",
    "RetryPolicy",
    "SyncStats",
    "calculate_backoff",
    "run_drift_monitor",
    "run_sync_subscriber",
]
