"""Translation of search filters into engine and relational queries.

Both compilers are pure functions of the filters and static options, so
the same request always yields the same query on either path.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import ColumnElement, Select, and_, case, false, func, or_, select

from listing_search.listings.store import listings
from listing_search.search.schemas import (
    SearchFilters,
    SortField,
    SortOrder,
    SuggestContext,
)

EARTH_RADIUS_KM = 6371.0088
SUGGEST_NAME = "listing_suggest"

TEXT_FIELDS: tuple[str, ...] = (
    "title^3",
    "title.english^2",
    "title.russian^2",
    "title.kazakh^2",
    "description",
    "description.english",
    "description.russian",
    "description.kazakh",
    "search_text",
    "search_keywords^1.5",
)

SIMILAR_FIELDS: tuple[str, ...] = ("title", "description", "mineral", "region", "kind")

_FALLBACK_TEXT_COLUMNS = ("title", "description", "region", "mineral", "license_number")
_FACET_FIELDS = ("kind", "mineral", "region")


def _amount_label(value: float) -> str:
    for divisor, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if value >= divisor:
            return f"{value / divisor:g}{suffix}"
    return f"{value:g}"


@dataclass(frozen=True)
class PriceRange:
    """Half-open price interval [lower, upper) of the price facet."""

    key: str
    lower: float | None
    upper: float | None


def build_price_ranges(boundaries: Sequence[float]) -> tuple[PriceRange, ...]:
    """Turn ascending edges into contiguous price buckets.

    Args:
        boundaries: Ascending bucket edges.

    Returns:
        len(boundaries) + 1 buckets covering all prices.
    """
    edges = sorted(boundaries)
    if not edges:
        return (PriceRange("all", None, None),)

    ranges = [PriceRange(f"under_{_amount_label(edges[0])}", None, edges[0])]
    for lower, upper in zip(edges, edges[1:]):
        ranges.append(
            PriceRange(f"{_amount_label(lower)}-{_amount_label(upper)}", lower, upper)
        )
    ranges.append(PriceRange(f"over_{_amount_label(edges[-1])}", edges[-1], None))
    return tuple(ranges)


@dataclass(frozen=True)
class CompilerOptions:
    """Static compiler configuration.

    Attributes:
        searchable_statuses: Statuses eligible for results.
        price_boundaries: Edges of the price facet buckets.
        facet_size: Top-N buckets per terms facet.
        max_result_window: Deepest offset the engine serves.
    """

    searchable_statuses: tuple[str, ...] = ("active", "pending")
    price_boundaries: tuple[float, ...] = (1e9, 1e10, 5e10)
    facet_size: int = 20
    max_result_window: int = 10_000


@dataclass(frozen=True)
class EngineQuery:
    """Compiled search engine request."""

    query: dict[str, Any]
    sort: list[dict[str, Any]]
    from_: int
    size: int
    aggs: dict[str, Any]

    def as_search_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for AsyncElasticsearch.search."""
        return {
            "query": self.query,
            "sort": self.sort,
            "from_": self.from_,
            "size": self.size,
            "aggs": self.aggs,
            "track_total_hits": True,
        }


@dataclass(frozen=True)
class RelationalQuery:
    """Compiled fallback query over the listings table.

    Attributes:
        where: Conjunction of predicates.
        order_by: Ordering terms ending with the id tiebreaker.
        limit: Page size.
        offset: Rows to skip.
        facet_size: Top-N buckets per grouped facet.
        price_ranges: Buckets for the price facet.
    """

    where: tuple[ColumnElement[bool], ...]
    order_by: tuple[Any, ...]
    limit: int
    offset: int
    facet_size: int
    price_ranges: tuple[PriceRange, ...] = field(default=())

    def page_select(self) -> Select[Any]:
        """Select one page of matching rows."""
        return (
            select(listings)
            .where(*self.where)
            .order_by(*self.order_by)
            .limit(self.limit)
            .offset(self.offset)
        )

    def count_select(self) -> Select[Any]:
        """Count all matching rows."""
        return select(func.count()).select_from(listings).where(*self.where)

    def facet_selects(self) -> dict[str, Select[Any]]:
        """Grouped-count queries per terms facet, most frequent first."""
        selects = {}
        for name in _FACET_FIELDS:
            column = listings.c[name]
            count = func.count().label("count")
            selects[name] = (
                select(column.label("value"), count)
                .where(*self.where)
                .group_by(column)
                .order_by(count.desc(), column.asc())
                .limit(self.facet_size)
            )
        return selects

    def price_select(self) -> Select[Any]:
        """Count matching rows per price bucket in a single pass."""
        price = listings.c.price
        columns = []
        for i, bucket in enumerate(self.price_ranges):
            conditions = [price.is_not(None)]
            if bucket.lower is not None:
                conditions.append(price >= bucket.lower)
            if bucket.upper is not None:
                conditions.append(price < bucket.upper)
            columns.append(
                func.coalesce(func.sum(case((and_(*conditions), 1), else_=0)), 0).label(
                    f"bucket_{i}"
                )
            )
        return select(*columns).select_from(listings).where(*self.where)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def haversine_km(lat: float, lon: float) -> ColumnElement[float]:
    """SQL expression for great-circle distance from a point to each listing."""
    lat_col = listings.c.latitude
    lon_col = listings.c.longitude
    half_dlat = func.radians(lat_col - lat) / 2
    half_dlon = func.radians(lon_col - lon) / 2
    a = func.sin(half_dlat) * func.sin(half_dlat) + math.cos(
        math.radians(lat)
    ) * func.cos(func.radians(lat_col)) * func.sin(half_dlon) * func.sin(half_dlon)
    return 2 * EARTH_RADIUS_KM * func.asin(func.sqrt(a))


class QueryCompiler:
    """Compiles SearchFilters for the index and the fallback store."""

    def __init__(self, options: CompilerOptions | None = None) -> None:
        """Initialize compiler.

        Args:
            options: Static compiler configuration.
        """
        self._options = options or CompilerOptions()
        self._price_ranges = build_price_ranges(self._options.price_boundaries)

    @property
    def options(self) -> CompilerOptions:
        """Static compiler configuration."""
        return self._options

    @property
    def price_ranges(self) -> tuple[PriceRange, ...]:
        """Buckets of the price facet."""
        return self._price_ranges

    def effective_statuses(self, filters: SearchFilters) -> list[str]:
        """Statuses a search may return.

        Requested statuses are intersected with the searchable set; an
        empty request means every searchable status.
        """
        searchable = self._options.searchable_statuses
        if not filters.status:
            return sorted(searchable)
        return sorted({s.value for s in filters.status} & set(searchable))

    # Index engine

    def compile_index_query(self, filters: SearchFilters) -> EngineQuery:
        """Compile filters into an engine search request.

        Args:
            filters: Normalized search filters.

        Returns:
            Query, sort, pagination and facet aggregations.
        """
        text = filters.query.strip()
        if text:
            must: dict[str, Any] = {
                "multi_match": {
                    "query": text,
                    "fields": list(TEXT_FIELDS),
                    "type": "best_fields",
                    "fuzziness": "AUTO",
                    "prefix_length": 1,
                }
            }
        else:
            must = {"match_all": {}}

        query: dict[str, Any] = {
            "bool": {"must": [must], "filter": self._index_filters(filters)}
        }
        if text:
            query = {
                "function_score": {
                    "query": query,
                    "field_value_factor": {
                        "field": "boost_score",
                        "factor": 1.0,
                        "missing": 1.0,
                    },
                    "boost_mode": "multiply",
                }
            }

        return EngineQuery(
            query=query,
            sort=self._index_sort(filters, bool(text)),
            from_=(filters.page - 1) * filters.page_size,
            size=filters.page_size,
            aggs=self._index_aggs(),
        )

    def _index_filters(self, filters: SearchFilters) -> list[dict[str, Any]]:
        clauses: list[dict[str, Any]] = [
            {"terms": {"status": self.effective_statuses(filters)}}
        ]
        if filters.kind:
            clauses.append({"terms": {"kind": [k.value for k in filters.kind]}})
        if filters.mineral:
            clauses.append({"terms": {"mineral": list(filters.mineral)}})
        if filters.region:
            clauses.append({"terms": {"region": list(filters.region)}})
        if filters.verified is not None:
            clauses.append({"term": {"verified": filters.verified}})
        if filters.featured is not None:
            clauses.append({"term": {"featured": filters.featured}})

        for name, lower, upper in (
            ("price", filters.price_min, filters.price_max),
            ("area", filters.area_min, filters.area_max),
        ):
            bounds = {}
            if lower is not None:
                bounds["gte"] = lower
            if upper is not None:
                bounds["lte"] = upper
            if bounds:
                clauses.append({"range": {name: bounds}})

        if filters.geo is not None:
            clauses.append(
                {
                    "geo_distance": {
                        "distance": f"{filters.geo.radius_km}km",
                        "location": {"lat": filters.geo.lat, "lon": filters.geo.lon},
                    }
                }
            )
        return clauses

    def _index_sort(self, filters: SearchFilters, has_text: bool) -> list[dict[str, Any]]:
        order = filters.order.value
        if filters.sort is SortField.RELEVANCE:
            primary = [{"_score": "desc"}] if has_text else []
            return [*primary, {"created_at": "desc"}, {"id": "asc"}]
        if filters.sort is SortField.DISTANCE and filters.geo is not None:
            return [
                {
                    "_geo_distance": {
                        "location": {"lat": filters.geo.lat, "lon": filters.geo.lon},
                        "order": order,
                        "unit": "km",
                    }
                },
                {"id": "asc"},
            ]
        return [
            {filters.sort.value: {"order": order, "missing": "_last"}},
            {"id": "asc"},
        ]

    def _index_aggs(self) -> dict[str, Any]:
        aggs: dict[str, Any] = {
            name: {"terms": {"field": name, "size": self._options.facet_size}}
            for name in _FACET_FIELDS
        }
        ranges = []
        for bucket in self._price_ranges:
            spec: dict[str, Any] = {"key": bucket.key}
            if bucket.lower is not None:
                spec["from"] = bucket.lower
            if bucket.upper is not None:
                spec["to"] = bucket.upper
            ranges.append(spec)
        aggs["price"] = {"range": {"field": "price", "ranges": ranges}}
        return aggs

    def compile_index_suggest(
        self, prefix: str, context: SuggestContext, size: int = 10
    ) -> dict[str, Any]:
        """Compile a completion suggester request."""
        completion: dict[str, Any] = {
            "field": "suggest",
            "size": size,
            "skip_duplicates": True,
        }
        contexts: dict[str, list[str]] = {}
        if context.region:
            contexts["region"] = [context.region]
        if context.kind is not None:
            contexts["kind"] = [context.kind.value]
        if contexts:
            completion["contexts"] = contexts
        return {SUGGEST_NAME: {"prefix": prefix, "completion": completion}}

    def compile_index_similar(
        self, index_name: str, listing_id: str, limit: int
    ) -> dict[str, Any]:
        """Compile a more_like_this request for listings resembling one listing.

        Args:
            index_name: Index holding the reference document.
            listing_id: Reference listing, excluded from its own results.
            limit: Maximum hits.

        Returns:
            Keyword arguments for AsyncElasticsearch.search.
        """
        return {
            "query": {
                "bool": {
                    "must": [
                        {
                            "more_like_this": {
                                "fields": list(SIMILAR_FIELDS),
                                "like": [{"_index": index_name, "_id": listing_id}],
                                "min_term_freq": 1,
                                "min_doc_freq": 1,
                                "max_query_terms": 12,
                            }
                        }
                    ],
                    "filter": [
                        {"terms": {"status": sorted(self._options.searchable_statuses)}}
                    ],
                }
            },
            "sort": [{"_score": {"order": "desc"}}, {"id": {"order": "asc"}}],
            "size": limit,
        }

    # Relational fallback

    def compile_fallback_query(self, filters: SearchFilters) -> RelationalQuery:
        """Compile filters into an equivalent relational query.

        Args:
            filters: Normalized search filters.

        Returns:
            Predicates, ordering and pagination over the listings table.
        """
        return RelationalQuery(
            where=tuple(self._fallback_where(filters)),
            order_by=tuple(self._fallback_order(filters)),
            limit=filters.page_size,
            offset=(filters.page - 1) * filters.page_size,
            facet_size=self._options.facet_size,
            price_ranges=self._price_ranges,
        )

    def _fallback_where(self, filters: SearchFilters) -> list[ColumnElement[bool]]:
        c = listings.c
        statuses = self.effective_statuses(filters)
        where: list[ColumnElement[bool]] = [
            c.status.in_(statuses) if statuses else false()
        ]

        text = filters.query.strip()
        if text:
            pattern = f"%{_escape_like(text)}%"
            where.append(
                or_(*(c[name].ilike(pattern, escape="\\") for name in _FALLBACK_TEXT_COLUMNS))
            )
        if filters.kind:
            where.append(c.kind.in_([k.value for k in filters.kind]))
        if filters.mineral:
            where.append(c.mineral.in_(filters.mineral))
        if filters.region:
            where.append(c.region.in_(filters.region))
        if filters.verified is not None:
            where.append(c.verified == filters.verified)
        if filters.featured is not None:
            where.append(c.featured == filters.featured)
        if filters.price_min is not None:
            where.append(c.price >= filters.price_min)
        if filters.price_max is not None:
            where.append(c.price <= filters.price_max)
        if filters.area_min is not None:
            where.append(c.area >= filters.area_min)
        if filters.area_max is not None:
            where.append(c.area <= filters.area_max)
        if filters.geo is not None:
            where.append(c.latitude.is_not(None))
            where.append(c.longitude.is_not(None))
            where.append(
                haversine_km(filters.geo.lat, filters.geo.lon) <= filters.geo.radius_km
            )
        return where

    def _fallback_order(self, filters: SearchFilters) -> list[Any]:
        c = listings.c
        if filters.sort is SortField.RELEVANCE:
            return [c.created_at.desc(), c.id.asc()]
        if filters.sort is SortField.DISTANCE and filters.geo is not None:
            key: Any = haversine_km(filters.geo.lat, filters.geo.lon)
        else:
            key = c[filters.sort.value]
        ordered = key.asc() if filters.order is SortOrder.ASC else key.desc()
        return [ordered.nulls_last(), c.id.asc()]

    def compile_fallback_suggest(
        self, prefix: str, context: SuggestContext, size: int = 10
    ) -> Select[Any]:
        """Compile a title substring lookup for autocomplete."""
        c = listings.c
        statuses = sorted(self._options.searchable_statuses)
        stmt = select(c.title).where(
            c.status.in_(statuses),
            c.title.ilike(f"%{_escape_like(prefix)}%", escape="\\"),
        )
        if context.region:
            stmt = stmt.where(c.region == context.region)
        if context.kind is not None:
            stmt = stmt.where(c.kind == context.kind.value)
        return (
            stmt.group_by(c.title)
            .order_by(func.max(c.view_count).desc(), c.title.asc())
            .limit(size)
        )
