"""Service configuration loaded from environment variables."""
from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration loaded from environment variables.

    Attributes:
        host: Bind address for the API server.
        port: Port number for the API server.
        debug: Enable debug logging and API documentation.
        shutdown_timeout: Seconds to wait for graceful shutdown.
        admin_key: API key guarding admin endpoints (disabled when empty).
        database_url: SQLAlchemy URL of the canonical listing store.
        dead_letter_url: SQLAlchemy URL for dead-letter records.
            Falls back to database_url when empty.
        create_store_schema: Create the listings table at startup (development).
        elasticsearch_url: Elasticsearch node URL.
        elasticsearch_api_key: Optional Elasticsearch API key.
        index_name: Name of the listing search index.
        index_shards: Primary shard count used when creating the index.
        index_replicas: Replica count used when creating the index.
        index_refresh: Refresh policy for index writes.
        backend_timeout: Seconds allowed for any read or health call.
        index_write_timeout: Seconds allowed for index writes.
        health_check_ttl: Seconds an index health probe result is reused.
        cache_capacity: Maximum number of cached search results.
        cache_ttl: Seconds a cached search result stays valid.
        cache_sweep_interval: Seconds between expired-entry sweeps.
        sync_workers: Maximum concurrent sync applies across listings.
        sync_max_retries: Retries before a notification is dead-lettered.
        sync_backoff_base: Initial retry delay in seconds.
        sync_backoff_max: Upper bound for a single retry delay.
        reindex_batch_size: Records per bulk request during full reindex.
        drift_check_interval: Seconds between drift checks (0 disables).
        index_recovery_interval: Seconds between provisioning attempts when
            the index was unreachable at startup.
        feed_queue_size: Maximum pending notifications per subscriber.
        facet_size: Number of top buckets returned per terms facet.
        max_result_window: Deepest offset a search page may reach.
        searchable_statuses_raw: Comma-separated searchable statuses.
        price_facet_boundaries_raw: Comma-separated price bucket edges.
    """

    model_config = SettingsConfigDict(
        env_prefix="SEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False
    shutdown_timeout: float = 30.0
    admin_key: str = ""

    database_url: str = "sqlite:///./listings.db"
    dead_letter_url: str = ""
    create_store_schema: bool = False

    elasticsearch_url: str = "http://localhost:9200"
    elasticsearch_api_key: str = ""
    index_name: str = "mining_listings"
    index_shards: int = 1
    index_replicas: int = 0
    index_refresh: str = "wait_for"

    backend_timeout: float = 2.0
    index_write_timeout: float = 30.0
    health_check_ttl: float = 5.0

    cache_capacity: int = 1000
    cache_ttl: float = 300.0
    cache_sweep_interval: float = 60.0

    sync_workers: int = 8
    sync_max_retries: int = 3
    sync_backoff_base: float = 0.5
    sync_backoff_max: float = 8.0
    reindex_batch_size: int = 500
    drift_check_interval: float = 900.0
    index_recovery_interval: float = 10.0
    feed_queue_size: int = 1000

    facet_size: int = 20
    max_result_window: int = 10_000
    searchable_statuses_raw: str = "active,pending"
    price_facet_boundaries_raw: str = "1000000000,10000000000,50000000000"

    @computed_field
    @property
    def searchable_statuses(self) -> list[str]:
        """Parse searchable listing statuses from comma-separated string.

        Returns:
            Lower-cased status values whose records belong in the index.
        """
        return [
            status.strip().lower()
            for status in self.searchable_statuses_raw.split(",")
            if status.strip()
        ]

    @computed_field
    @property
    def price_facet_boundaries(self) -> list[float]:
        """Parse price facet boundaries from comma-separated string.

        Three ascending edges produce the four fixed price buckets.

        Returns:
            Sorted bucket edges.
        """
        return sorted(
            float(edge)
            for edge in self.price_facet_boundaries_raw.split(",")
            if edge.strip()
        )

    @property
    def effective_dead_letter_url(self) -> str:
        """Database URL used for dead-letter records."""
        return self.dead_letter_url or self.database_url
