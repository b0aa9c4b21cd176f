"""Search backends: the index engine and the relational fallback."""

import asyncio
import math
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError

from listing_search.errors import MappingError, TransientBackendError
from listing_search.listings.schemas import INTERNAL_FIELDS
from listing_search.listings.store import ListingStore, row_to_record, translate_store_errors
from listing_search.search.compiler import SUGGEST_NAME, QueryCompiler, RelationalQuery
from listing_search.search.engine import bounded, response_body, translate_errors
from listing_search.search.mapping import IndexSchemaManager
from listing_search.search.schemas import (
    FacetBucket,
    Facets,
    PriceBucket,
    SearchFilters,
    SearchHit,
    SearchResult,
    SuggestContext,
)
from listing_search.search.transform import IndexDocument, compute_boost_score

logger = structlog.get_logger()

SUGGEST_SIZE = 10


class SearchBackend(Protocol):
    """Read interface shared by the index and the fallback store."""

    name: str

    async def search(self, filters: SearchFilters) -> SearchResult:
        """Execute a search."""
        ...

    async def suggest(self, prefix: str, context: SuggestContext) -> list[str]:
        """Return title completions for a prefix."""
        ...


def build_result(
    filters: SearchFilters,
    records: list[SearchHit],
    total: int,
    facets: Facets,
) -> SearchResult:
    """Assemble the response envelope for one page."""
    return SearchResult(
        records=records,
        total=total,
        page=filters.page,
        page_size=filters.page_size,
        total_pages=math.ceil(total / filters.page_size) if total else 0,
        facets=facets,
    )


def dedupe(values: Sequence[str], limit: int) -> list[str]:
    """Drop repeated values keeping first occurrence order."""
    seen: dict[str, None] = {}
    for value in values:
        seen.setdefault(value, None)
    return list(seen)[:limit]


@contextmanager
def _read_errors(operation: str) -> Iterator[None]:
    # Any failed read degrades to the fallback path
    try:
        with translate_errors(operation):
            yield
    except ApiError as exc:
        raise TransientBackendError("index", operation, str(exc)) from exc


@dataclass
class BulkOutcome:
    """Result of a bulk write.

    Attributes:
        indexed: Documents written.
        rejected: Documents the index refused, with the reason.
        retryable: Documents that failed transiently.
    """

    indexed: int = 0
    rejected: dict[str, str] = field(default_factory=dict)
    retryable: list[str] = field(default_factory=list)


class IndexBackend:
    """Search index engine adapter.

    Reads are bounded by the read timeout; writes by the write timeout.
    """

    name = "index"

    def __init__(
        self,
        client: AsyncElasticsearch,
        schema: IndexSchemaManager,
        compiler: QueryCompiler,
        timeout: float = 2.0,
        write_timeout: float = 30.0,
        refresh: str = "wait_for",
    ) -> None:
        """Initialize index backend.

        Args:
            client: Async Elasticsearch client.
            schema: Schema manager owning the index.
            compiler: Query compiler.
            timeout: Seconds allowed per read.
            write_timeout: Seconds allowed per write.
            refresh: Refresh policy for writes.
        """
        self._client = client
        self._schema = schema
        self._compiler = compiler
        self._timeout = timeout
        self._write_timeout = write_timeout
        self._refresh = refresh

    @property
    def schema(self) -> IndexSchemaManager:
        """Schema manager owning the index."""
        return self._schema

    @property
    def index_name(self) -> str:
        """Name of the listing index."""
        return self._schema.index_name

    async def _read(self, call: Any, operation: str) -> Any:
        with _read_errors(operation):
            response = await bounded(
                call, timeout=self._timeout, backend="index", operation=operation
            )
        return response_body(response)

    async def _write(self, call: Any, operation: str) -> Any:
        with translate_errors(operation):
            response = await bounded(
                call, timeout=self._write_timeout, backend="index", operation=operation
            )
        return response_body(response)

    async def is_available(self) -> bool:
        """Probe the cluster and the index within the read timeout."""
        try:
            reachable = await self._read(self._client.ping(), "ping")
            if not reachable:
                return False
            return bool(
                await self._read(self._client.indices.exists(index=self.index_name), "exists")
            )
        except TransientBackendError:
            return False

    async def count(self) -> int:
        """Number of documents in the index."""
        body = await self._read(self._client.count(index=self.index_name), "count")
        return int(body["count"])

    async def search(self, filters: SearchFilters) -> SearchResult:
        """Execute a search against the index.

        Raises:
            TransientBackendError: If the index fails or times out.
        """
        compiled = self._compiler.compile_index_query(filters)
        body = await self._read(
            self._client.search(index=self.index_name, **compiled.as_search_kwargs()),
            "search",
        )

        hits = body["hits"]
        total = hits["total"]["value"] if isinstance(hits["total"], dict) else hits["total"]
        records = [
            SearchHit.model_validate({**hit["_source"], "score": hit.get("_score")})
            for hit in hits["hits"]
        ]
        return build_result(filters, records, int(total), self._facets(body))

    def _facets(self, body: dict[str, Any]) -> Facets:
        aggs = body.get("aggregations", {})

        def terms(name: str) -> list[FacetBucket]:
            return [
                FacetBucket(value=str(b["key"]), count=b["doc_count"])
                for b in aggs.get(name, {}).get("buckets", [])
            ]

        price_counts = {
            b["key"]: b["doc_count"] for b in aggs.get("price", {}).get("buckets", [])
        }
        return Facets(
            kind=terms("kind"),
            mineral=terms("mineral"),
            region=terms("region"),
            price=[
                PriceBucket(
                    key=r.key, min=r.lower, max=r.upper, count=price_counts.get(r.key, 0)
                )
                for r in self._compiler.price_ranges
            ],
        )

    async def suggest(self, prefix: str, context: SuggestContext) -> list[str]:
        """Return completions from the suggest field."""
        body = await self._read(
            self._client.search(
                index=self.index_name,
                suggest=self._compiler.compile_index_suggest(prefix, context, SUGGEST_SIZE),
                source=False,
            ),
            "suggest",
        )
        entries = body.get("suggest", {}).get(SUGGEST_NAME, [])
        titles = [option["text"] for entry in entries for option in entry["options"]]
        return dedupe(titles, SUGGEST_SIZE)

    async def similar(self, listing_id: str, limit: int) -> list[SearchHit]:
        """Return searchable listings resembling one listing.

        Raises:
            TransientBackendError: If the index fails or times out.
        """
        body = await self._read(
            self._client.search(
                index=self.index_name,
                **self._compiler.compile_index_similar(self.index_name, listing_id, limit),
            ),
            "similar",
        )
        return [
            SearchHit.model_validate({**hit["_source"], "score": hit.get("_score")})
            for hit in body["hits"]["hits"]
        ]

    async def upsert(self, document: IndexDocument) -> None:
        """Write a document, replacing any previous version.

        Raises:
            MappingError: If the index rejects the document.
            TransientBackendError: If the write fails transiently.
        """
        try:
            await self._write(
                self._client.index(
                    index=self.index_name,
                    id=document.id,
                    document=document.to_source(),
                    refresh=self._refresh,
                ),
                "upsert",
            )
        except ApiError as exc:
            if exc.meta.status == 400:
                raise MappingError(document.id, exc.message) from exc
            raise TransientBackendError("index", "upsert", str(exc)) from exc

    async def delete(self, listing_id: str) -> bool:
        """Remove a document.

        Returns:
            True if a document was removed; deleting a missing one is not an error.
        """
        try:
            body = await self._write(
                self._client.delete(
                    index=self.index_name, id=listing_id, refresh=self._refresh
                ),
                "delete",
            )
        except NotFoundError:
            return False
        return body.get("result") == "deleted"

    async def bulk_upsert(self, documents: Sequence[IndexDocument]) -> BulkOutcome:
        """Write many documents in one request.

        Per-item failures are reported, not raised.

        Raises:
            TransientBackendError: If the whole request fails.
        """
        outcome = BulkOutcome()
        if not documents:
            return outcome

        operations: list[dict[str, Any]] = []
        for document in documents:
            operations.append({"index": {"_index": self.index_name, "_id": document.id}})
            operations.append(document.to_source())

        body = await self._write(
            self._client.bulk(operations=operations, refresh=self._refresh), "bulk_upsert"
        )
        for item in body.get("items", []):
            result = item.get("index", {})
            error = result.get("error")
            if not error:
                outcome.indexed += 1
            elif result.get("status", 0) >= 500 or result.get("status") == 429:
                outcome.retryable.append(result["_id"])
            else:
                outcome.rejected[result["_id"]] = error.get("type", "unknown")
        return outcome

    async def bulk_delete(self, listing_ids: Sequence[str]) -> int:
        """Remove many documents in one request.

        Returns:
            Number of documents actually deleted.
        """
        if not listing_ids:
            return 0
        operations = [
            {"delete": {"_index": self.index_name, "_id": listing_id}}
            for listing_id in listing_ids
        ]
        body = await self._write(
            self._client.bulk(operations=operations, refresh=self._refresh), "bulk_delete"
        )
        return sum(
            1 for item in body.get("items", []) if item.get("delete", {}).get("result") == "deleted"
        )

    async def document_ids(self, page_size: int = 1000) -> set[str]:
        """Enumerate all document ids in the index."""
        ids: set[str] = set()
        search_after: list[Any] | None = None
        while True:
            kwargs: dict[str, Any] = {
                "index": self.index_name,
                "query": {"match_all": {}},
                "sort": [{"id": "asc"}],
                "size": page_size,
                "source": False,
            }
            if search_after is not None:
                kwargs["search_after"] = search_after
            try:
                body = await self._write(self._client.search(**kwargs), "document_ids")
            except NotFoundError:
                return ids
            hits = body["hits"]["hits"]
            if not hits:
                return ids
            ids.update(hit["_id"] for hit in hits)
            search_after = hits[-1]["sort"]


class FallbackBackend:
    """Serves searches from the canonical store when the index is down.

    Equivalent to the index on structural filters; text matching is a
    case-insensitive substring match and relevance order is recency.
    """

    name = "fallback"

    def __init__(
        self,
        store: ListingStore,
        compiler: QueryCompiler,
        timeout: float = 2.0,
    ) -> None:
        """Initialize fallback backend.

        Args:
            store: Canonical listing store.
            compiler: Query compiler.
            timeout: Seconds allowed per query.
        """
        self._store = store
        self._compiler = compiler
        self._timeout = timeout

    async def search(self, filters: SearchFilters) -> SearchResult:
        """Execute a search against the store.

        Raises:
            TransientBackendError: If the store fails or times out.
        """
        compiled = self._compiler.compile_fallback_query(filters)
        return await bounded(
            asyncio.to_thread(self._run_search, filters, compiled),
            timeout=self._timeout,
            backend="store",
            operation="search",
        )

    def _run_search(self, filters: SearchFilters, compiled: RelationalQuery) -> SearchResult:
        now = datetime.now(UTC)
        with translate_store_errors("search"), self._store.engine.connect() as conn:
            rows = conn.execute(compiled.page_select()).mappings().all()
            total = int(conn.execute(compiled.count_select()).scalar_one())
            facet_rows = {
                name: conn.execute(stmt).all()
                for name, stmt in compiled.facet_selects().items()
            }
            price_row = conn.execute(compiled.price_select()).one()

        records = []
        for row in rows:
            try:
                record = row_to_record(row)
            except MappingError as exc:
                logger.warning("fallback_record_invalid", listing_id=exc.listing_id)
                continue
            records.append(
                SearchHit(
                    **record.model_dump(exclude=set(INTERNAL_FIELDS)),
                    boost_score=compute_boost_score(record, now),
                )
            )

        def terms(name: str) -> list[FacetBucket]:
            return [FacetBucket(value=str(v), count=n) for v, n in facet_rows[name]]

        facets = Facets(
            kind=terms("kind"),
            mineral=terms("mineral"),
            region=terms("region"),
            price=[
                PriceBucket(key=r.key, min=r.lower, max=r.upper, count=int(count or 0))
                for r, count in zip(compiled.price_ranges, price_row)
            ],
        )
        return build_result(filters, records, total, facets)

    async def suggest(self, prefix: str, context: SuggestContext) -> list[str]:
        """Return titles containing the prefix."""
        stmt = self._compiler.compile_fallback_suggest(prefix, context, SUGGEST_SIZE)

        def run() -> list[str]:
            with translate_store_errors("suggest"), self._store.engine.connect() as conn:
                return list(conn.execute(stmt).scalars())

        titles = await bounded(
            asyncio.to_thread(run), timeout=self._timeout, backend="store", operation="suggest"
        )
        return dedupe(titles, SUGGEST_SIZE)

