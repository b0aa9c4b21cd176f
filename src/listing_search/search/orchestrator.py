"""Search orchestration: path selection, caching and degradation."""

import asyncio
import time

import structlog

from listing_search.errors import SearchUnavailableError, TransientBackendError
from listing_search.search.backends import FallbackBackend, IndexBackend, SearchBackend
from listing_search.search.cache import ResultCache, make_key
from listing_search.search.schemas import (
    IndexHealth,
    SearchFilters,
    SearchHit,
    SearchResult,
    SuggestContext,
)

logger = structlog.get_logger()

LISTINGS_TAG = "listings"
MIN_SUGGEST_PREFIX = 2


def normalize_filters(filters: SearchFilters, max_result_window: int) -> SearchFilters:
    """Canonicalize filters so equivalent requests share a cache key.

    Sets are sorted and deduplicated, the query is whitespace-collapsed,
    and the page is clamped to the engine's result window.

    Args:
        filters: Validated request filters.
        max_result_window: Deepest offset the engine serves.

    Returns:
        Normalized filters.
    """

    def clean(values: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted({v.strip() for v in values if v.strip()}))

    max_page = max(1, max_result_window // filters.page_size)
    return filters.model_copy(
        update={
            "query": " ".join(filters.query.split()),
            "kind": tuple(sorted(set(filters.kind), key=lambda k: k.value)),
            "status": tuple(sorted(set(filters.status), key=lambda s: s.value)),
            "mineral": clean(filters.mineral),
            "region": clean(filters.region),
            "page": min(filters.page, max_page),
        }
    )


class SearchOrchestrator:
    """Routes reads to the index or the fallback store.

    The index health probe is cached for a short TTL. A transient index
    failure during a request retries that request once on the fallback.
    """

    def __init__(
        self,
        index: IndexBackend,
        fallback: FallbackBackend,
        cache: ResultCache,
        cache_ttl: float = 300.0,
        health_check_ttl: float = 5.0,
        max_result_window: int = 10_000,
    ) -> None:
        """Initialize orchestrator.

        Args:
            index: Search index backend.
            fallback: Relational fallback backend.
            cache: Result cache.
            cache_ttl: Seconds a cached result stays valid.
            health_check_ttl: Seconds a health probe result is reused.
            max_result_window: Deepest offset the engine serves.
        """
        self._index = index
        self._fallback = fallback
        self._cache = cache
        self._cache_ttl = cache_ttl
        self._health_check_ttl = health_check_ttl
        self._max_result_window = max_result_window
        self._index_healthy: bool | None = None
        self._checked_at = 0.0
        self._health_lock = asyncio.Lock()

    @property
    def cache(self) -> ResultCache:
        """Result cache shared with the sync service."""
        return self._cache

    async def index_available(self) -> bool:
        """Return the cached index health, probing when stale."""
        if self._probe_is_fresh():
            return bool(self._index_healthy)
        async with self._health_lock:
            if not self._probe_is_fresh():
                self._record_health(await self._index.is_available())
        return bool(self._index_healthy)

    def _probe_is_fresh(self) -> bool:
        return (
            self._index_healthy is not None
            and time.monotonic() - self._checked_at < self._health_check_ttl
        )

    def _record_health(self, healthy: bool) -> None:
        if healthy != self._index_healthy:
            logger.info("index_health_changed", index_available=healthy)
        self._index_healthy = healthy
        self._checked_at = time.monotonic()

    def mark_index_unhealthy(self) -> None:
        """Route reads to the fallback until the next probe."""
        self._record_health(False)

    async def search(self, filters: SearchFilters) -> SearchResult:
        """Execute a search on the best available path.

        Args:
            filters: Validated search filters.

        Returns:
            Page of results with facets.

        Raises:
            SearchUnavailableError: If neither backend can serve the read.
        """
        normalized = normalize_filters(filters, self._max_result_window)

        # A hit under the last known path answers without probing
        last_path = self._last_path()
        if last_path is not None:
            cached = self._lookup(last_path, normalized)
            if cached is not None:
                return cached

        if await self.index_available():
            try:
                return await self._execute(
                    self._index, normalized, lookup=last_path is not self._index
                )
            except TransientBackendError as exc:
                logger.warning(
                    "search_fallback",
                    operation=exc.operation,
                    error=str(exc),
                )
                self.mark_index_unhealthy()

        try:
            return await self._execute(
                self._fallback, normalized, lookup=last_path is not self._fallback
            )
        except TransientBackendError as exc:
            logger.error("search_unavailable", error=str(exc))
            raise SearchUnavailableError() from exc

    def _last_path(self) -> SearchBackend | None:
        if self._index_healthy is None:
            return None
        return self._index if self._index_healthy else self._fallback

    def _lookup(self, backend: SearchBackend, filters: SearchFilters) -> SearchResult | None:
        cached = self._cache.get(make_key(filters, backend.name))
        if cached is not None:
            logger.debug("search_cache_hit", path=backend.name)
        return cached

    async def _execute(
        self, backend: SearchBackend, filters: SearchFilters, lookup: bool = True
    ) -> SearchResult:
        if lookup:
            cached = self._lookup(backend, filters)
            if cached is not None:
                return cached

        # Taken before the read so an invalidation landing mid-flight wins
        generation = self._cache.generation
        started = time.perf_counter()
        result = await backend.search(filters)
        stored = self._cache.set(
            make_key(filters, backend.name),
            result,
            ttl=self._cache_ttl,
            tags=(LISTINGS_TAG,),
            generation=generation,
        )
        if not stored:
            logger.debug("search_cache_write_skipped", path=backend.name)
        logger.info(
            "search_executed",
            path=backend.name,
            total=result.total,
            page=filters.page,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return result

    async def suggest(
        self, prefix: str, context: SuggestContext | None = None
    ) -> list[str]:
        """Return up to ten distinct title completions.

        Prefixes shorter than two characters return an empty list
        without touching any backend.

        Raises:
            SearchUnavailableError: If neither backend can serve the read.
        """
        prefix = prefix.strip()
        if len(prefix) < MIN_SUGGEST_PREFIX:
            return []
        context = context or SuggestContext()

        if await self.index_available():
            try:
                return await self._index.suggest(prefix, context)
            except TransientBackendError as exc:
                logger.warning("suggest_fallback", error=str(exc))
                self.mark_index_unhealthy()

        try:
            return await self._fallback.suggest(prefix, context)
        except TransientBackendError as exc:
            logger.error("suggest_unavailable", error=str(exc))
            raise SearchUnavailableError() from exc

    async def similar(self, listing_id: str, limit: int = 5) -> list[SearchHit]:
        """Listings that share wording with the given one.

        Only the index can rank by similarity; while it is unavailable
        the answer is an empty list rather than an error.
        """
        if not await self.index_available():
            return []
        try:
            return await self._index.similar(listing_id, limit)
        except TransientBackendError as exc:
            logger.warning("similar_unavailable", listing_id=listing_id, error=str(exc))
            self.mark_index_unhealthy()
            return []

    async def health_check(self) -> IndexHealth:
        """Probe the index directly, refreshing the cached health."""
        available = await self._index.is_available()
        self._record_health(available)
        if not available:
            return IndexHealth(index_available=False)
        try:
            count = await self._index.count()
        except TransientBackendError:
            return IndexHealth(index_available=True)
        return IndexHealth(index_available=True, document_count=count)
