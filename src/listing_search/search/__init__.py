"""Listing search: index schema, compilers, backends and orchestration."""

from listing_search.search.backends import BulkOutcome, FallbackBackend, IndexBackend
from listing_search.search.cache import CacheStats, ResultCache
from listing_search.search.compiler import CompilerOptions, QueryCompiler
from listing_search.search.mapping import IndexProvisioning, IndexSchemaManager
from listing_search.search.orchestrator import LISTINGS_TAG, SearchOrchestrator
from listing_search.search.schemas import SearchFilters, SearchResult, SuggestContext
from listing_search.search.transform import IndexDocument, to_document

__all__ = [
    "BulkOutcome",
    "CacheStats",
    "CompilerOptions",
    "FallbackBackend",
    "IndexBackend",
    "IndexDocument",
    "IndexProvisioning",
    "IndexSchemaManager",
    "LISTINGS_TAG",
    "QueryCompiler",
    "ResultCache",
    "SearchFilters",
    "SearchOrchestrator",
    "SearchResult",
    "SuggestContext",
    "to_document",
]
