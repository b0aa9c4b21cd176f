"""Pytest configuration and fixtures."""

import sys
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine

from fake_elasticsearch import FakeElasticsearch
from listing_search.app import create_app
from listing_search.config import Settings
from listing_search.lifecycle import SearchRuntime
from listing_search.listings.store import ListingStore, create_store_engine
from listing_search.search.mapping import build_index_body


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a throwaway SQLite file."""
    return Settings(
        host="127.0.0.1",
        port=8000,
        debug=True,
        database_url=f"sqlite:///{tmp_path / 'listings.db'}",
        index_name="test_listings",
        backend_timeout=1.0,
        index_write_timeout=2.0,
        health_check_ttl=0.0,
        cache_ttl=60.0,
        sync_max_retries=2,
        sync_backoff_base=0.001,
        sync_backoff_max=0.01,
        reindex_batch_size=2,
        drift_check_interval=0,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def engine(settings: Settings) -> Iterator[Engine]:
    """Store engine for the test database."""
    engine = create_store_engine(settings.database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine: Engine, settings: Settings) -> ListingStore:
    """Listing store with its schema created."""
    store = ListingStore(engine, settings.searchable_statuses)
    store.create_schema()
    return store


@pytest.fixture
def es(settings: Settings) -> FakeElasticsearch:
    """Fake Elasticsearch client with the listing index already created."""
    client = FakeElasticsearch()
    client.indices.create_now(settings.index_name, build_index_body())
    return client


@pytest.fixture
def make_runtime(settings: Settings, es: FakeElasticsearch, engine: Engine, store: ListingStore):
    """Build runtimes sharing the test clients."""

    def factory(**overrides: object) -> SearchRuntime:
        runtime_settings = settings.model_copy(update=overrides) if overrides else settings
        return SearchRuntime(runtime_settings, es_client=es, engine=engine)  # type: ignore[arg-type]

    return factory


@pytest.fixture
async def runtime(make_runtime) -> AsyncIterator[SearchRuntime]:
    """Started runtime with background tasks running."""
    runtime = make_runtime()
    await runtime.start()
    yield runtime
    await runtime.close()


@pytest.fixture
def client(make_runtime) -> Iterator[TestClient]:
    """Create test client with configured app."""
    app = create_app(runtime=make_runtime())
    with TestClient(app) as test_client:
        yield test_client
