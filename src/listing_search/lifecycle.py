"""Construction, startup and shutdown of the search runtime."""

import asyncio

import structlog
from elasticsearch import AsyncElasticsearch
from sqlalchemy import Engine

from listing_search.config import Settings
from listing_search.errors import ReindexInProgressError, TransientBackendError
from listing_search.events.bus import ChangeFeed
from listing_search.listings.store import ListingStore, create_store_engine
from listing_search.search.backends import FallbackBackend, IndexBackend
from listing_search.search.cache import ResultCache
from listing_search.search.compiler import CompilerOptions, QueryCompiler
from listing_search.search.engine import create_elasticsearch_client
from listing_search.search.mapping import IndexProvisioning, IndexSchemaManager
from listing_search.search.orchestrator import SearchOrchestrator
from listing_search.sync.dead_letters import DeadLetterStore
from listing_search.sync.retry import RetryPolicy
from listing_search.sync.service import ChangeSyncService
from listing_search.sync.subscriber import (
    run_drift_monitor,
    run_index_recovery,
    run_sync_subscriber,
)

logger = structlog.get_logger()


class GracefulShutdown:
    """Signal-driven shutdown flag shared by the server loop.

    Attributes:
        is_triggered: Whether shutdown has been triggered.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_triggered(self) -> bool:
        """Check if shutdown has been triggered."""
        return self._event.is_set()

    def trigger(self) -> None:
        """Signal shutdown. Idempotent."""
        if self._event.is_set():
            return
        logger.info("shutdown_triggered")
        self._event.set()

    async def wait_for_trigger(self) -> None:
        """Block until trigger() is called."""
        await self._event.wait()


class SearchRuntime:
    """Owns clients, components and background tasks of the service.

    Clients passed in by the caller are used as-is and left open on
    close; clients created here are closed with the runtime.
    """

    def __init__(
        self,
        settings: Settings,
        es_client: AsyncElasticsearch | None = None,
        engine: Engine | None = None,
    ) -> None:
        """Build every component from settings.

        Args:
            settings: Service configuration.
            es_client: Elasticsearch client to use instead of a new one.
            engine: Store engine to use instead of a new one.
        """
        self.settings = settings
        self._owned_engines: list[Engine] = []

        self._owns_es = es_client is None
        self.es_client = es_client or create_elasticsearch_client(settings)

        if engine is None:
            engine = create_store_engine(settings.database_url)
            self._owned_engines.append(engine)
        self.engine = engine

        if settings.effective_dead_letter_url == settings.database_url:
            dead_letter_engine = engine
        else:
            dead_letter_engine = create_store_engine(settings.effective_dead_letter_url)
            self._owned_engines.append(dead_letter_engine)

        self.store = ListingStore(engine, settings.searchable_statuses)
        self.dead_letters = DeadLetterStore(dead_letter_engine)
        self.compiler = QueryCompiler(
            CompilerOptions(
                searchable_statuses=tuple(settings.searchable_statuses),
                price_boundaries=tuple(settings.price_facet_boundaries),
                facet_size=settings.facet_size,
                max_result_window=settings.max_result_window,
            )
        )
        self.schema = IndexSchemaManager(
            self.es_client,
            settings.index_name,
            shards=settings.index_shards,
            replicas=settings.index_replicas,
            timeout=settings.index_write_timeout,
        )
        self.index = IndexBackend(
            self.es_client,
            self.schema,
            self.compiler,
            timeout=settings.backend_timeout,
            write_timeout=settings.index_write_timeout,
            refresh=settings.index_refresh,
        )
        self.fallback = FallbackBackend(
            self.store, self.compiler, timeout=settings.backend_timeout
        )
        self.cache = ResultCache(settings.cache_capacity, settings.cache_ttl)
        self.orchestrator = SearchOrchestrator(
            self.index,
            self.fallback,
            self.cache,
            cache_ttl=settings.cache_ttl,
            health_check_ttl=settings.health_check_ttl,
            max_result_window=settings.max_result_window,
        )
        self.feed = ChangeFeed(queue_size=settings.feed_queue_size)
        self.sync_service = ChangeSyncService(
            self.store,
            self.index,
            self.cache,
            self.dead_letters,
            max_workers=settings.sync_workers,
            max_pending=settings.feed_queue_size,
            retry=RetryPolicy(
                max_retries=settings.sync_max_retries,
                base=settings.sync_backoff_base,
                cap=settings.sync_backoff_max,
            ),
            batch_size=settings.reindex_batch_size,
        )
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        """Provision storage and start background tasks.

        An unreachable index is tolerated: reads fall back to the store
        while a recovery task keeps provisioning until the cluster answers.
        """
        if self.settings.create_store_schema:
            await asyncio.to_thread(self.store.create_schema)
        await asyncio.to_thread(self.dead_letters.create_schema)

        provisioning: IndexProvisioning | None = None
        try:
            provisioning = await self.schema.ensure_index()
        except TransientBackendError as exc:
            logger.warning("index_unavailable_at_startup", error=str(exc))

        self._tasks.append(
            asyncio.create_task(run_sync_subscriber(self.feed, self.sync_service))
        )
        self._tasks.append(
            asyncio.create_task(self.cache.run_sweeper(self.settings.cache_sweep_interval))
        )
        if self.settings.drift_check_interval > 0:
            self._tasks.append(
                asyncio.create_task(
                    run_drift_monitor(self.sync_service, self.settings.drift_check_interval)
                )
            )
        if provisioning is IndexProvisioning.CREATED:
            self._tasks.append(asyncio.create_task(self._initial_reindex()))
        elif provisioning is None:
            self._tasks.append(
                asyncio.create_task(
                    run_index_recovery(
                        self.sync_service, self.settings.index_recovery_interval
                    )
                )
            )

        logger.info(
            "search_runtime_started",
            index=self.settings.index_name,
            provisioning=provisioning.value if provisioning else None,
        )

    async def _initial_reindex(self) -> None:
        try:
            await self.sync_service.reindex_all()
        except (TransientBackendError, ReindexInProgressError) as exc:
            logger.warning("initial_reindex_failed", error=str(exc))

    async def close(self) -> None:
        """Stop background tasks and release owned clients.

        Notifications already accepted are given shutdown_timeout to
        finish; whatever remains is dead-lettered for replay.
        """
        # Taken before cancelling so the subscriber cannot consume more
        leftover = self.feed.take_pending()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.sync_service.close(self.settings.shutdown_timeout, leftover)

        if self._owns_es:
            await self.es_client.close()
        for engine in self._owned_engines:
            engine.dispose()
        logger.info("search_runtime_stopped")
