"""Change synchronization between the listing store and the index."""

import asyncio
import time
from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

import structlog

from listing_search.errors import MappingError, ReindexInProgressError, TransientBackendError
from listing_search.events.types import ChangeNotification, ChangeOperation
from listing_search.listings.schemas import ListingRecord
from listing_search.listings.store import ListingStore
from listing_search.search.backends import IndexBackend
from listing_search.search.cache import ResultCache
from listing_search.search.mapping import IndexProvisioning
from listing_search.search.orchestrator import LISTINGS_TAG
from listing_search.search.transform import IndexDocument, to_document
from listing_search.sync.dead_letters import DeadLetterStore
from listing_search.sync.retry import RetryPolicy
from listing_search.sync.schemas import (
    DriftRepairReport,
    DriftReport,
    NotificationState,
    ReindexReport,
    SyncStats,
)

logger = structlog.get_logger()


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ChangeSyncService:
    """Applies change notifications to the index with per-id ordering.

    Notifications for the same listing run strictly in arrival order;
    different listings run concurrently up to max_workers. Every apply
    re-reads the record from the store, so redelivery and reordering
    across ids converge on the store's current state.
    """

    def __init__(
        self,
        store: ListingStore,
        index: IndexBackend,
        cache: ResultCache,
        dead_letters: DeadLetterStore,
        *,
        max_workers: int = 8,
        max_pending: int = 10_000,
        retry: RetryPolicy | None = None,
        batch_size: int = 500,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        """Initialize sync service.

        Args:
            store: Canonical listing store.
            index: Index backend receiving writes.
            cache: Result cache invalidated after writes.
            dead_letters: Durable dead letter storage.
            max_workers: Maximum concurrent applies across listings.
            max_pending: Maximum accepted but unfinished notifications.
            retry: Backoff policy for transient failures.
            batch_size: Records per bulk request during reindex.
            clock: Source of the reference time for documents.
        """
        self._store = store
        self._index = index
        self._cache = cache
        self._dead_letters = dead_letters
        self._retry = retry or RetryPolicy()
        self._batch_size = batch_size
        self._clock = clock

        self._workers = asyncio.Semaphore(max_workers)
        self._capacity = asyncio.Semaphore(max_pending)
        self._lanes: dict[str, deque[ChangeNotification]] = {}
        self._lane_tasks: dict[str, asyncio.Task[None]] = {}
        self._in_flight: dict[str, ChangeNotification] = {}
        self._idle = asyncio.Event()
        self._idle.set()

        self._reindex_lock = asyncio.Lock()
        self._resume_cursor: str | None = None
        # Ids written incrementally while a reindex runs
        self._touched: set[str] = set()
        self._last_reindex: ReindexReport | None = None
        self._last_drift: DriftReport | None = None
        self._received = 0
        self._applied = 0
        self._retried = 0
        self._dead_lettered = 0

    @property
    def reindex_running(self) -> bool:
        """Whether a full reindex is in progress."""
        return self._reindex_lock.locked()

    # Notification pipeline

    async def submit(self, notification: ChangeNotification) -> None:
        """Accept a notification for processing.

        Waits while too many notifications are unfinished.

        Args:
            notification: Change to apply.
        """
        await self._capacity.acquire()
        self._received += 1
        lane = self._lanes.setdefault(notification.id, deque())
        lane.append(notification)
        if notification.id not in self._lane_tasks:
            self._idle.clear()
            self._lane_tasks[notification.id] = asyncio.create_task(
                self._run_lane(notification.id)
            )

    async def drain(self) -> None:
        """Wait until every accepted notification has been processed."""
        await self._idle.wait()

    async def close(
        self, timeout: float = 0.0, pending: Iterable[ChangeNotification] = ()
    ) -> int:
        """Stop processing without losing accepted notifications.

        Waits up to timeout for the lanes to drain, then cancels them and
        dead-letters every notification not yet applied, along with any
        pending ones the caller still holds.

        Args:
            timeout: Seconds to wait for in-flight work.
            pending: Notifications accepted upstream but never submitted.

        Returns:
            Number of notifications dead-lettered.
        """
        if self._lane_tasks and timeout > 0:
            try:
                await asyncio.wait_for(self.drain(), timeout)
            except TimeoutError:
                logger.warning(
                    "sync_drain_timeout",
                    timeout_seconds=timeout,
                    active_lanes=len(self._lane_tasks),
                )

        unfinished = list(self._in_flight.values())
        for lane in self._lanes.values():
            unfinished.extend(lane)
        unfinished.extend(pending)

        tasks = list(self._lane_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for notification in unfinished:
            await self._dead_letter(notification, "shutdown", 0)
        if unfinished:
            logger.warning("sync_closed_with_pending", dead_lettered=len(unfinished))
        return len(unfinished)

    async def _run_lane(self, listing_id: str) -> None:
        try:
            while lane := self._lanes.get(listing_id):
                notification = lane.popleft()
                self._in_flight[listing_id] = notification
                try:
                    await self._process(notification)
                finally:
                    self._in_flight.pop(listing_id, None)
                    self._capacity.release()
        finally:
            self._lanes.pop(listing_id, None)
            self._lane_tasks.pop(listing_id, None)
            if not self._lane_tasks:
                self._idle.set()

    async def _process(self, notification: ChangeNotification) -> NotificationState:
        log = logger.bind(
            listing_id=notification.id, operation=notification.operation.value
        )
        attempt = 0
        while True:
            try:
                # Worker slot covers the attempt only, never the backoff
                async with self._workers:
                    action = await self.apply(notification)
            except MappingError as exc:
                log.warning("sync_mapping_failed", reason=exc.reason)
                return await self._dead_letter(notification, exc.reason, attempt + 1)
            except TransientBackendError as exc:
                if attempt >= self._retry.max_retries:
                    log.error("sync_failed", attempts=attempt + 1, error=str(exc))
                    return await self._dead_letter(notification, str(exc), attempt + 1)
                delay = self._retry.delay(attempt)
                log.warning(
                    "sync_retry",
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(exc),
                )
                self._retried += 1
                await asyncio.sleep(delay)
                attempt += 1
                continue
            except Exception as exc:
                log.exception("sync_unexpected_error")
                return await self._dead_letter(notification, repr(exc), attempt + 1)

            self._applied += 1
            self._cache.invalidate(LISTINGS_TAG)
            log.info("sync_applied", action=action, attempts=attempt + 1)
            return NotificationState.ACKNOWLEDGED

    async def _dead_letter(
        self, notification: ChangeNotification, reason: str, attempts: int
    ) -> NotificationState:
        self._dead_lettered += 1
        try:
            await asyncio.to_thread(self._dead_letters.add, notification, reason, attempts)
        except TransientBackendError as exc:
            logger.error(
                "dead_letter_write_failed",
                listing_id=notification.id,
                error=str(exc),
            )
        else:
            logger.warning(
                "sync_dead_lettered",
                listing_id=notification.id,
                attempts=attempts,
                reason=reason,
            )
        return NotificationState.DEAD_LETTERED

    async def apply(self, notification: ChangeNotification) -> str:
        """Apply one notification without retries.

        Inserts and updates re-fetch the record; records that are gone or
        no longer searchable are removed from the index.

        Returns:
            "upserted" or "deleted".

        Raises:
            MappingError: If the record cannot be projected.
            TransientBackendError: If the store or index fails.
        """
        if self._reindex_lock.locked():
            self._touched.add(notification.id)

        if notification.operation is ChangeOperation.DELETE:
            await self._index.delete(notification.id)
            return "deleted"

        record = await asyncio.to_thread(self._store.fetch, notification.id)
        if record is None or not self._store.is_searchable(record):
            await self._index.delete(notification.id)
            return "deleted"

        await self._index.upsert(to_document(record, self._clock()))
        return "upserted"

    async def sync_document(self, listing_id: str) -> str:
        """Bring a single listing's document up to date immediately.

        Raises:
            MappingError: If the record cannot be projected.
            TransientBackendError: If the store or index fails.
        """
        action = await self.apply(
            ChangeNotification(id=listing_id, operation=ChangeOperation.UPDATE)
        )
        self._cache.invalidate(LISTINGS_TAG)
        logger.info("sync_document_applied", listing_id=listing_id, action=action)
        return action

    # Full reindex

    async def reindex_all(self, resume: bool = False) -> ReindexReport:
        """Rebuild the index from the store.

        Upserts every searchable record in id-ordered batches, then
        removes documents whose record is gone or no longer searchable.
        Safe to repeat. A failed run can be resumed after its last
        completed batch.

        Args:
            resume: Continue after the last batch of a failed run.

        Returns:
            Counts of the run.

        Raises:
            ReindexInProgressError: If another reindex is running.
            TransientBackendError: If a backend stays unavailable.
        """
        if self._reindex_lock.locked():
            raise ReindexInProgressError()

        async with self._reindex_lock:
            started = time.perf_counter()
            cursor = self._resume_cursor if resume else None
            report = ReindexReport(resumed_from=cursor)
            logger.info("reindex_started", resumed_from=cursor)
            if not resume:
                self._touched.clear()

            await self._retry.run(self._index.schema.ensure_index, "ensure_index")
            while True:
                page = await self._retry.run(
                    lambda: asyncio.to_thread(
                        self._store.fetch_searchable_page, cursor, self._batch_size
                    ),
                    "enumerate",
                )
                if page.last_id is None:
                    break

                report.skipped += len(page.invalid_ids)
                documents = self._project(page.records, report)
                indexed, rejected = await self._bulk_write(documents)
                report.indexed += indexed
                report.skipped += rejected
                report.batches += 1
                cursor = page.last_id
                self._resume_cursor = cursor

            index_ids = await self._retry.run(self._index.document_ids, "document_ids")
            # Re-read the store after enumeration so concurrent inserts survive
            current = await self._retry.run(
                lambda: asyncio.to_thread(self._store.searchable_ids), "ids"
            )
            stale = sorted(index_ids - current)
            if stale:
                report.deleted = await self._retry.run(
                    lambda: self._index.bulk_delete(stale), "bulk_delete"
                )

            # Batches may have overwritten newer incremental writes
            touched = sorted(self._touched)
            self._touched.clear()
            for listing_id in touched:
                await self.submit(
                    ChangeNotification(id=listing_id, operation=ChangeOperation.UPDATE)
                )
            if touched:
                await self.drain()
                self._touched.clear()
                logger.info("reindex_reapplied", count=len(touched))
            report.reapplied = len(touched)

            self._resume_cursor = None
            self._cache.invalidate(LISTINGS_TAG)
            report.duration_ms = round((time.perf_counter() - started) * 1000, 2)
            self._last_reindex = report
            logger.info("reindex_completed", **report.model_dump())
            return report

    def _project(
        self, records: list[ListingRecord], report: ReindexReport
    ) -> list[IndexDocument]:
        now = self._clock()
        documents = []
        for record in records:
            try:
                documents.append(to_document(record, now))
            except MappingError as exc:
                logger.warning(
                    "reindex_record_skipped",
                    listing_id=exc.listing_id,
                    reason=exc.reason,
                )
                report.skipped += 1
        return documents

    async def _bulk_write(self, documents: list[IndexDocument]) -> tuple[int, int]:
        indexed = 0
        pending = documents
        for attempt in range(self._retry.max_retries + 1):
            outcome = await self._retry.run(
                lambda: self._index.bulk_upsert(pending), "bulk_upsert"
            )
            indexed += outcome.indexed
            for listing_id, reason in outcome.rejected.items():
                logger.warning(
                    "reindex_document_rejected", listing_id=listing_id, reason=reason
                )
            retryable = set(outcome.retryable)
            pending = [d for d in pending if d.id in retryable]
            if not pending:
                return indexed, len(outcome.rejected)
            await asyncio.sleep(self._retry.delay(attempt))

        logger.error("reindex_documents_failed", listing_ids=[d.id for d in pending])
        return indexed, len(pending)

    async def restore_index(self) -> IndexProvisioning:
        """Make sure the index exists, rebuilding it when it had to be created.

        Raises:
            TransientBackendError: If the cluster is unreachable.
            ReindexInProgressError: If the index was created while a
                reindex is already running.
        """
        provisioning = await self._index.schema.ensure_index()
        if provisioning is IndexProvisioning.CREATED:
            logger.warning("index_recreated", index=self._index.index_name)
            await self.reindex_all()
        return provisioning

    # Drift

    async def verify_drift(self) -> DriftReport:
        """Compare the searchable store set with the index.

        Id sets are only compared when the counts differ.

        Raises:
            TransientBackendError: If a backend stays unavailable.
        """
        store_count = await self._retry.run(
            lambda: asyncio.to_thread(self._store.count_searchable), "count_store"
        )
        index_count = await self._retry.run(self._index.count, "count_index")

        missing_in_index: list[str] = []
        missing_in_store: list[str] = []
        if store_count != index_count:
            store_ids = await self._retry.run(
                lambda: asyncio.to_thread(self._store.searchable_ids), "ids"
            )
            index_ids = await self._retry.run(self._index.document_ids, "document_ids")
            missing_in_index = sorted(store_ids - index_ids)
            missing_in_store = sorted(index_ids - store_ids)

        report = DriftReport(
            store_count=store_count,
            index_count=index_count,
            missing_in_index=missing_in_index,
            missing_in_store=missing_in_store,
            checked_at=_utc_now(),
        )
        self._last_drift = report
        if report.in_sync:
            logger.info("drift_check_passed", document_count=index_count)
        else:
            logger.warning(
                "drift_detected",
                store_count=store_count,
                index_count=index_count,
                missing_in_index=len(missing_in_index),
                missing_in_store=len(missing_in_store),
            )
        return report

    async def repair_drift(self) -> DriftRepairReport:
        """Detect drift and push the differing ids through the sync pipeline."""
        drift = await self.verify_drift()
        for listing_id in drift.missing_in_index:
            await self.submit(
                ChangeNotification(id=listing_id, operation=ChangeOperation.UPDATE)
            )
        for listing_id in drift.missing_in_store:
            await self.submit(
                ChangeNotification(id=listing_id, operation=ChangeOperation.DELETE)
            )
        await self.drain()
        logger.info(
            "drift_repaired",
            upserts=len(drift.missing_in_index),
            deletes=len(drift.missing_in_store),
        )
        return DriftRepairReport(
            drift=drift,
            queued_upserts=len(drift.missing_in_index),
            queued_deletes=len(drift.missing_in_store),
        )

    # Dead letters

    async def replay_dead_letters(self, limit: int = 100) -> int:
        """Resubmit dead-lettered notifications and wait for them.

        Returns:
            Number of notifications replayed.
        """
        letters = await asyncio.to_thread(self._dead_letters.list_entries, limit)
        if not letters:
            return 0
        await asyncio.to_thread(self._dead_letters.remove, [letter.id for letter in letters])
        for letter in letters:
            await self.submit(
                ChangeNotification(
                    id=letter.listing_id,
                    operation=letter.operation,
                    occurred_at=letter.occurred_at,
                )
            )
        await self.drain()
        logger.info("dead_letters_replayed", count=len(letters))
        return len(letters)

    async def stats(self) -> SyncStats:
        """Snapshot of sync counters."""
        try:
            stored: int | None = await asyncio.to_thread(self._dead_letters.count)
        except TransientBackendError:
            stored = None
        return SyncStats(
            received=self._received,
            applied=self._applied,
            retried=self._retried,
            dead_lettered=self._dead_lettered,
            pending=sum(len(lane) for lane in self._lanes.values()),
            active_lanes=len(self._lane_tasks),
            dead_letters_stored=stored,
            reindex_running=self.reindex_running,
            last_reindex=self._last_reindex,
            last_drift=self._last_drift,
        )
