"""Listing search endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Query, Request

from listing_search.listings.schemas import ListingKind
from listing_search.search.schemas import (
    IndexHealth,
    SearchFilters,
    SearchResult,
    SimilarResponse,
    SuggestContext,
    SuggestResponse,
)

if TYPE_CHECKING:
    from listing_search.search.orchestrator import SearchOrchestrator

router = APIRouter(prefix="/search", tags=["search"])


@router.post(
    "",
    response_model=SearchResult,
    summary="Faceted listing search",
    description="Full-text, structured and geo search with facets over the filtered set.",
)
async def search(request: Request, filters: SearchFilters) -> SearchResult:
    """Search listings.

    Args:
        request: FastAPI request (provides access to app state).
        filters: Search filters.

    Returns:
        One page of results with facets.
    """
    orchestrator: SearchOrchestrator = request.app.state.orchestrator
    return await orchestrator.search(filters)


@router.get("/suggest", response_model=SuggestResponse, summary="Title autocomplete")
async def suggest(
    request: Request,
    prefix: str = Query(default="", max_length=100, description="Typed prefix"),
    region: str | None = Query(default=None, max_length=64),
    kind: ListingKind | None = Query(default=None),
) -> SuggestResponse:
    """Suggest listing titles for a prefix.

    Prefixes shorter than two characters return no suggestions.
    """
    orchestrator: SearchOrchestrator = request.app.state.orchestrator
    suggestions = await orchestrator.suggest(
        prefix, SuggestContext(region=region, kind=kind)
    )
    return SuggestResponse(suggestions=suggestions)


@router.get(
    "/similar/{listing_id}",
    response_model=SimilarResponse,
    summary="Similar listings",
)
async def similar(
    request: Request,
    listing_id: str,
    limit: int = Query(default=5, ge=1, le=20),
) -> SimilarResponse:
    """Find listings worded like the given one.

    Empty while the search index is unavailable.
    """
    orchestrator: SearchOrchestrator = request.app.state.orchestrator
    records = await orchestrator.similar(listing_id, limit)
    return SimilarResponse(listing_id=listing_id, records=records, total=len(records))


@router.get("/health", response_model=IndexHealth, summary="Search index health")
async def index_health(request: Request) -> IndexHealth:
    """Report index availability and document count."""
    orchestrator: SearchOrchestrator = request.app.state.orchestrator
    return await orchestrator.health_check()
