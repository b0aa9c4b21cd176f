"""Long-lived tasks feeding the sync service."""

import asyncio

import structlog

from listing_search.errors import ReindexInProgressError, TransientBackendError
from listing_search.events.bus import ChangeFeed
from listing_search.sync.service import ChangeSyncService

logger = structlog.get_logger()


async def run_sync_subscriber(feed: ChangeFeed, service: ChangeSyncService) -> None:
    """Subscribe to the change feed and hand notifications to the sync service.

    Runs as a long-lived asyncio task until cancelled.

    Args:
        feed: Application change feed.
        service: Sync service applying the notifications.
    """
    subscriber_id, notifications = await feed.subscribe()
    logger.info("sync_subscriber_started", subscriber_id=subscriber_id)

    try:
        async for notification in notifications:
            await service.submit(notification)
    except asyncio.CancelledError:
        logger.info("sync_subscriber_stopped", subscriber_id=subscriber_id)
        raise


async def run_drift_monitor(service: ChangeSyncService, interval: float) -> None:
    """Periodically verify the index against the store and repair drift.

    Each check first restores the index if it has gone missing, so a
    cluster that comes back empty is rebuilt before drift is measured.

    Args:
        service: Sync service owning drift checks.
        interval: Seconds between checks.
    """
    logger.info("drift_monitor_started", interval_seconds=interval)
    try:
        while True:
            await asyncio.sleep(interval)
            if service.reindex_running:
                continue
            try:
                await service.restore_index()
                report = await service.verify_drift()
                if not report.in_sync:
                    await service.repair_drift()
            except (TransientBackendError, ReindexInProgressError) as exc:
                logger.warning("drift_check_skipped", error=str(exc))
    except asyncio.CancelledError:
        logger.info("drift_monitor_stopped")
        raise


async def run_index_recovery(service: ChangeSyncService, interval: float) -> None:
    """Retry index provisioning until the cluster answers, then exit.

    Started when the index was unreachable at startup.

    Args:
        service: Sync service owning the index.
        interval: Seconds between attempts.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            provisioning = await service.restore_index()
        except (TransientBackendError, ReindexInProgressError) as exc:
            logger.info("index_recovery_pending", attempts=attempts, error=str(exc))
            await asyncio.sleep(interval)
            continue
        logger.info(
            "index_recovered", attempts=attempts, provisioning=provisioning.value
        )
        return
