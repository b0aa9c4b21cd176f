"""Canonical listing model and transactional store adapter."""
from listing_search.listings.schemas import (
    INTERNAL_FIELDS,
    ListingKind,
    ListingRecord,
    ListingStatus,
    PublicListing,
)
from listing_search.listings.store import ListingStore, StorePage, create_store_engine

__all__ = [
    "INTERNAL_FIELDS",
    "ListingKind",
    "ListingRecord",
    "ListingStatus",
    "ListingStore",
    "PublicListing",
    "StorePage",
    "create_store_engine",
]
