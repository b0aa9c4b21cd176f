"""Pydantic schemas for sync reports and dead letters."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field

from listing_search.events.types import ChangeOperation


class NotificationState(str, Enum):
    """Lifecycle of a change notification inside the sync service."""

    RECEIVED = "received"
    TRANSFORMED = "transformed"
    APPLIED = "applied"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


class DriftReport(BaseModel):
    """Difference between the searchable store set and the index.

    Attributes:
        store_count: Searchable records in the store.
        index_count: Documents in the index.
        missing_in_index: Searchable ids with no document.
        missing_in_store: Document ids with no searchable record.
        checked_at: When the comparison finished.
    """

    store_count: int
    index_count: int
    missing_in_index: list[str] = Field(default_factory=list)
    missing_in_store: list[str] = Field(default_factory=list)
    checked_at: datetime

    @computed_field
    @property
    def in_sync(self) -> bool:
        """True when counts match and no id differs."""
        return (
            self.store_count == self.index_count
            and not self.missing_in_index
            and not self.missing_in_store
        )


class DriftRepairReport(BaseModel):
    """Work queued to close a detected drift."""

    drift: DriftReport
    queued_upserts: int
    queued_deletes: int


class ReindexReport(BaseModel):
    """Outcome of a full reindex.

    Attributes:
        indexed: Documents written.
        deleted: Stale documents removed.
        skipped: Records that could not be indexed.
        batches: Bulk requests issued.
        reapplied: Ids written incrementally during the run and applied again.
        duration_ms: Wall-clock duration.
        resumed_from: Cursor the run started after, if resumed.
    """

    indexed: int = 0
    deleted: int = 0
    skipped: int = 0
    batches: int = 0
    reapplied: int = 0
    duration_ms: float = 0.0
    resumed_from: str | None = None


class DeadLetter(BaseModel):
    """A notification that exhausted its retries.

    Attributes:
        id: Dead letter row id.
        listing_id: Listing the notification referred to.
        operation: Mutation kind.
        occurred_at: Original observation time.
        reason: Last failure reason.
        attempts: Attempts made before giving up.
        failed_at: When the notification was dead-lettered.
    """

    id: int
    listing_id: str
    operation: ChangeOperation
    occurred_at: datetime
    reason: str
    attempts: int
    failed_at: datetime


class SyncStats(BaseModel):
    """Sync service counters."""

    received: int = 0
    applied: int = 0
    retried: int = 0
    dead_lettered: int = 0
    pending: int = 0
    active_lanes: int = 0
    dead_letters_stored: int | None = None
    reindex_running: bool = False
    last_reindex: ReindexReport | None = None
    last_drift: DriftReport | None = None
