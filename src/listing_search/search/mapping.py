"""Index settings, mappings and idempotent provisioning."""

import asyncio
from enum import Enum
from typing import Any

import structlog
from elasticsearch import AsyncElasticsearch, BadRequestError, NotFoundError

from listing_search.search.engine import bounded, response_body, translate_errors

logger = structlog.get_logger()

SCHEMA_VERSION = 1

LANGUAGE_ANALYZERS: dict[str, str] = {
    "english": "english",
    "russian": "russian",
    "kazakh": "kazakh_text",
}

_KEYWORD_FIELDS = (
    "id",
    "kind",
    "mineral",
    "region",
    "status",
    "license_number",
    "exploration_stage",
    "geological_confidence",
    "seller_id",
    "search_keywords",
)


class IndexProvisioning(str, Enum):
    """Outcome of ensure_index."""

    CREATED = "created"
    UNCHANGED = "unchanged"
    MISMATCH = "mismatch"


def _multilingual_text() -> dict[str, Any]:
    fields: dict[str, Any] = {
        lang: {"type": "text", "analyzer": analyzer}
        for lang, analyzer in LANGUAGE_ANALYZERS.items()
    }
    fields["keyword"] = {"type": "keyword", "ignore_above": 256}
    return {"type": "text", "analyzer": "standard", "fields": fields}


def build_index_body(shards: int = 1, replicas: int = 0) -> dict[str, Any]:
    """Build the create-index request body.

    Args:
        shards: Primary shard count.
        replicas: Replica count.

    Returns:
        Settings and mappings for the listing index.
    """
    properties: dict[str, Any] = {name: {"type": "keyword"} for name in _KEYWORD_FIELDS}
    properties.update(
        {
            "title": _multilingual_text(),
            "description": _multilingual_text(),
            "search_text": {"type": "text", "analyzer": "standard"},
            "price": {"type": "double"},
            "area": {"type": "double"},
            "exploration_budget": {"type": "double"},
            "latitude": {"type": "double"},
            "longitude": {"type": "double"},
            "boost_score": {"type": "float"},
            "view_count": {"type": "integer"},
            "favorite_count": {"type": "integer"},
            "verified": {"type": "boolean"},
            "featured": {"type": "boolean"},
            "license_expiry": {"type": "date"},
            "discovery_date": {"type": "date"},
            "created_at": {"type": "date"},
            "updated_at": {"type": "date"},
            "location": {"type": "geo_point"},
            "suggest": {
                "type": "completion",
                "contexts": [
                    {"name": "region", "type": "category", "path": "region"},
                    {"name": "kind", "type": "category", "path": "kind"},
                ],
            },
        }
    )
    return {
        "settings": {
            "number_of_shards": shards,
            "number_of_replicas": replicas,
            "analysis": {
                "analyzer": {
                    # No stemmer ships for Kazakh; tokenize and fold case only
                    "kazakh_text": {
                        "type": "custom",
                        "tokenizer": "standard",
                        "filter": ["lowercase"],
                    }
                }
            },
        },
        "mappings": {
            "dynamic": "strict",
            "_meta": {"schema_version": SCHEMA_VERSION},
            "properties": properties,
        },
    }


class IndexSchemaManager:
    """Provisions the listing index and checks its schema version.

    Never migrates an existing index in place: a version mismatch is
    reported so operators can reindex into a fresh index.
    """

    def __init__(
        self,
        client: AsyncElasticsearch,
        index_name: str,
        shards: int = 1,
        replicas: int = 0,
        timeout: float = 30.0,
    ) -> None:
        """Initialize schema manager.

        Args:
            client: Async Elasticsearch client.
            index_name: Index to manage.
            shards: Primary shard count for new indexes.
            replicas: Replica count for new indexes.
            timeout: Seconds allowed per admin call.
        """
        self._client = client
        self._index_name = index_name
        self._shards = shards
        self._replicas = replicas
        self._timeout = timeout
        self._lock = asyncio.Lock()

    @property
    def index_name(self) -> str:
        """Name of the managed index."""
        return self._index_name

    async def index_exists(self) -> bool:
        """Check whether the index exists."""
        with translate_errors("exists"):
            response = await bounded(
                self._client.indices.exists(index=self._index_name),
                timeout=self._timeout,
                backend="index",
                operation="exists",
            )
        return bool(response)

    async def document_count(self) -> int:
        """Number of documents in the index, 0 if it does not exist."""
        try:
            with translate_errors("count"):
                response = await bounded(
                    self._client.count(index=self._index_name),
                    timeout=self._timeout,
                    backend="index",
                    operation="count",
                )
        except NotFoundError:
            return 0
        return int(response_body(response)["count"])

    async def ensure_index(self) -> IndexProvisioning:
        """Create the index if absent, otherwise verify its schema version.

        Safe to call concurrently and repeatedly.

        Returns:
            What the call found or did.

        Raises:
            TransientBackendError: If the cluster is unreachable.
        """
        async with self._lock:
            if not await self.index_exists():
                created = await self._create()
                if created:
                    return IndexProvisioning.CREATED
            return await self._check_version()

    async def _create(self) -> bool:
        body = build_index_body(self._shards, self._replicas)
        try:
            with translate_errors("create_index"):
                await bounded(
                    self._client.indices.create(
                        index=self._index_name,
                        settings=body["settings"],
                        mappings=body["mappings"],
                    ),
                    timeout=self._timeout,
                    backend="index",
                    operation="create_index",
                )
        except BadRequestError as exc:
            if exc.error != "resource_already_exists_exception":
                raise
            logger.info("index_created_concurrently", index=self._index_name)
            return False

        logger.info(
            "index_created",
            index=self._index_name,
            schema_version=SCHEMA_VERSION,
        )
        return True

    async def _check_version(self) -> IndexProvisioning:
        with translate_errors("get_mapping"):
            response = await bounded(
                self._client.indices.get_mapping(index=self._index_name),
                timeout=self._timeout,
                backend="index",
                operation="get_mapping",
            )
        body = response_body(response)
        mappings = next(iter(body.values()), {}).get("mappings", {})
        found = mappings.get("_meta", {}).get("schema_version")

        if found != SCHEMA_VERSION:
            logger.warning(
                "index_schema_mismatch",
                index=self._index_name,
                expected=SCHEMA_VERSION,
                found=found,
            )
            return IndexProvisioning.MISMATCH
        return IndexProvisioning.UNCHANGED

    async def drop_index(self) -> bool:
        """Delete the index.

        Returns:
            True if an index was deleted, False if none existed.
        """
        async with self._lock:
            try:
                with translate_errors("delete_index"):
                    await bounded(
                        self._client.indices.delete(index=self._index_name),
                        timeout=self._timeout,
                        backend="index",
                        operation="delete_index",
                    )
            except NotFoundError:
                return False
        logger.info("index_dropped", index=self._index_name)
        return True
