"""Admin endpoints for synchronization, reindexing and cache control."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, Request
from pydantic import BaseModel, Field

from listing_search.events.types import ChangeNotification
from listing_search.search.cache import CacheStats
from listing_search.sync.schemas import (
    DeadLetter,
    DriftRepairReport,
    DriftReport,
    ReindexReport,
    SyncStats,
)

if TYPE_CHECKING:
    from listing_search.events.bus import ChangeFeed
    from listing_search.search.cache import ResultCache
    from listing_search.sync.service import ChangeSyncService

logger = structlog.get_logger()

router = APIRouter(prefix="/admin", tags=["admin"])


class NotificationBatch(BaseModel):
    """Change notifications delivered by an external transport.

    Attributes:
        notifications: Changes in delivery order.
    """

    notifications: list[ChangeNotification] = Field(min_length=1, max_length=1000)


class AcceptedResponse(BaseModel):
    """Acknowledgement of queued notifications."""

    accepted: int


class SyncDocumentResponse(BaseModel):
    """Outcome of a manual single-listing sync."""

    id: str
    action: str


class ReplayResponse(BaseModel):
    """Outcome of a dead letter replay."""

    replayed: int


class CacheClearResponse(BaseModel):
    """Outcome of a cache flush."""

    removed: int
    stats: CacheStats


def _sync(request: Request) -> ChangeSyncService:
    return request.app.state.sync_service


@router.post("/sync/notifications", response_model=AcceptedResponse, status_code=202)
async def publish_notifications(request: Request, batch: NotificationBatch) -> AcceptedResponse:
    """Push store change notifications into the change feed.

    Returns once the notifications are queued; they are applied
    asynchronously.
    """
    feed: ChangeFeed = request.app.state.feed
    for notification in batch.notifications:
        await feed.publish(notification)
    logger.info("notifications_accepted", count=len(batch.notifications))
    return AcceptedResponse(accepted=len(batch.notifications))


@router.post("/sync/{listing_id}", response_model=SyncDocumentResponse)
async def sync_listing(
    request: Request,
    listing_id: str = Path(min_length=1, max_length=64),
) -> SyncDocumentResponse:
    """Synchronize one listing's index document immediately."""
    action = await _sync(request).sync_document(listing_id)
    return SyncDocumentResponse(id=listing_id, action=action)


@router.get("/sync/stats", response_model=SyncStats)
async def sync_stats(request: Request) -> SyncStats:
    """Report sync counters."""
    return await _sync(request).stats()


@router.post("/reindex", response_model=ReindexReport)
async def reindex(
    request: Request,
    resume: bool = Query(default=False, description="Continue a failed run"),
) -> ReindexReport:
    """Rebuild the index from the store.

    Returns 409 while another reindex is running.
    """
    return await _sync(request).reindex_all(resume=resume)


@router.get("/drift", response_model=DriftReport)
async def drift(request: Request) -> DriftReport:
    """Compare the index with the store."""
    return await _sync(request).verify_drift()


@router.post("/drift/repair", response_model=DriftRepairReport)
async def repair_drift(request: Request) -> DriftRepairReport:
    """Detect drift and resynchronize the differing listings."""
    sync_service = _sync(request)
    if sync_service.reindex_running:
        raise HTTPException(status_code=409, detail="A full reindex is in progress")
    return await sync_service.repair_drift()


@router.get("/dead-letters", response_model=list[DeadLetter])
async def list_dead_letters(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[DeadLetter]:
    """List notifications that exhausted their retries, oldest first."""
    store = request.app.state.runtime.dead_letters
    return await asyncio.to_thread(store.list_entries, limit)


@router.post("/dead-letters/replay", response_model=ReplayResponse)
async def replay_dead_letters(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReplayResponse:
    """Resubmit dead-lettered notifications through the sync pipeline."""
    replayed = await _sync(request).replay_dead_letters(limit)
    return ReplayResponse(replayed=replayed)


@router.delete("/cache", response_model=CacheClearResponse)
async def clear_cache(request: Request) -> CacheClearResponse:
    """Drop every cached search result."""
    cache: ResultCache = request.app.state.cache
    removed = cache.clear()
    logger.info("cache_cleared", removed=removed)
    return CacheClearResponse(removed=removed, stats=cache.stats())
