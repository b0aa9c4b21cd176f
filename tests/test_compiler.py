"""Query compiler tests."""

import pytest
from pydantic import ValidationError

from listing_search.listings.schemas import ListingKind, ListingStatus
from listing_search.search.compiler import (
    CompilerOptions,
    QueryCompiler,
    build_price_ranges,
)
from listing_search.search.schemas import (
    GeoFilter,
    SearchFilters,
    SortField,
    SortOrder,
    SuggestContext,
)


@pytest.fixture
def compiler() -> QueryCompiler:
    return QueryCompiler(CompilerOptions(facet_size=5))


def _filters(query: dict) -> list[dict]:
    if "function_score" in query:
        query = query["function_score"]["query"]
    return query["bool"]["filter"]


def test_price_ranges_cover_all_prices() -> None:
    """Three edges produce four contiguous buckets."""
    ranges = build_price_ranges([1e9, 1e10, 5e10])
    assert [r.key for r in ranges] == ["under_1B", "1B-10B", "10B-50B", "over_50B"]
    assert ranges[0].lower is None and ranges[-1].upper is None
    for left, right in zip(ranges, ranges[1:]):
        assert left.upper == right.lower


def test_text_query_is_fuzzy_and_boosted(compiler: QueryCompiler) -> None:
    """Free text compiles to a boosted fuzzy multi_match."""
    compiled = compiler.compile_index_query(SearchFilters(query="Tengiz"))
    function_score = compiled.query["function_score"]
    assert function_score["field_value_factor"]["field"] == "boost_score"
    match = function_score["query"]["bool"]["must"][0]["multi_match"]
    assert match["fuzziness"] == "AUTO"
    assert "title^3" in match["fields"]
    assert any(f.startswith("title.russian") for f in match["fields"])


def test_empty_query_matches_all_sorted_by_recency(compiler: QueryCompiler) -> None:
    """Relevance without text resolves to newest first."""
    compiled = compiler.compile_index_query(SearchFilters())
    assert compiled.query["bool"]["must"] == [{"match_all": {}}]
    assert compiled.sort == [{"created_at": "desc"}, {"id": "asc"}]


def test_relevance_sort_ends_with_tiebreakers(compiler: QueryCompiler) -> None:
    """Score ties fall back to recency, then id."""
    compiled = compiler.compile_index_query(SearchFilters(query="gold"))
    assert compiled.sort == [{"_score": "desc"}, {"created_at": "desc"}, {"id": "asc"}]


def test_field_sort_puts_missing_last(compiler: QueryCompiler) -> None:
    """Field sorts push missing values to the end and break ties by id."""
    compiled = compiler.compile_index_query(
        SearchFilters(sort=SortField.PRICE, order=SortOrder.ASC)
    )
    assert compiled.sort == [{"price": {"order": "asc", "missing": "_last"}}, {"id": "asc"}]


def test_distance_sort_uses_geo_origin(compiler: QueryCompiler) -> None:
    """Distance sort orders by distance from the geo filter center."""
    geo = GeoFilter(lat=47.1, lon=51.9, radius_km=100)
    compiled = compiler.compile_index_query(
        SearchFilters(geo=geo, sort=SortField.DISTANCE, order=SortOrder.ASC)
    )
    assert compiled.sort[0]["_geo_distance"]["location"] == {"lat": 47.1, "lon": 51.9}
    assert {"geo_distance": {"distance": "100.0km", "location": {"lat": 47.1, "lon": 51.9}}} in (
        _filters(compiled.query)
    )


def test_distance_sort_requires_geo() -> None:
    """Distance sort without an origin is rejected."""
    with pytest.raises(ValidationError):
        SearchFilters(sort=SortField.DISTANCE)


def test_inverted_range_rejected() -> None:
    """Min above max is rejected."""
    with pytest.raises(ValidationError):
        SearchFilters(price_min=10, price_max=5)


def test_structural_filters(compiler: QueryCompiler) -> None:
    """Structural filters compile into filter context clauses."""
    compiled = compiler.compile_index_query(
        SearchFilters(
            kind=(ListingKind.MINERAL_OCCURRENCE,),
            region=("Atyrau",),
            price_min=100,
            verified=True,
        )
    )
    clauses = _filters(compiled.query)
    assert {"terms": {"kind": ["mineral_occurrence"]}} in clauses
    assert {"terms": {"region": ["Atyrau"]}} in clauses
    assert {"range": {"price": {"gte": 100}}} in clauses
    assert {"term": {"verified": True}} in clauses


def test_status_defaults_to_searchable(compiler: QueryCompiler) -> None:
    """Without a status filter only searchable statuses match."""
    clauses = _filters(compiler.compile_index_query(SearchFilters()).query)
    assert {"terms": {"status": ["active", "pending"]}} in clauses


def test_status_filter_cannot_reach_unsearchable(compiler: QueryCompiler) -> None:
    """Requesting sold listings yields an empty status set."""
    filters = SearchFilters(status=(ListingStatus.SOLD, ListingStatus.ACTIVE))
    clauses = _filters(compiler.compile_index_query(filters).query)
    assert {"terms": {"status": ["active"]}} in clauses


def test_pagination_and_facets(compiler: QueryCompiler) -> None:
    """Offset follows the page; facets use the configured size."""
    compiled = compiler.compile_index_query(SearchFilters(page=3, page_size=10))
    assert compiled.from_ == 20
    assert compiled.size == 10
    assert compiled.aggs["region"] == {"terms": {"field": "region", "size": 5}}
    assert len(compiled.aggs["price"]["range"]["ranges"]) == 4
    assert compiled.as_search_kwargs()["track_total_hits"] is True


def test_compilation_is_pure(compiler: QueryCompiler) -> None:
    """Equal filters compile to equal queries."""
    filters = SearchFilters(query="copper", region=("Karaganda",))
    assert compiler.compile_index_query(filters) == compiler.compile_index_query(filters)


def test_fallback_query_pagination(compiler: QueryCompiler) -> None:
    """The relational query carries the same pagination."""
    compiled = compiler.compile_fallback_query(SearchFilters(page=2, page_size=25))
    assert compiled.limit == 25
    assert compiled.offset == 25
    assert len(compiled.price_ranges) == 4


def test_suggest_contexts(compiler: QueryCompiler) -> None:
    """Suggest context narrows the completion by region and kind."""
    body = compiler.compile_index_suggest(
        "Ten", SuggestContext(region="Atyrau", kind=ListingKind.MINING_LICENSE)
    )
    completion = body["listing_suggest"]["completion"]
    assert completion["contexts"] == {"region": ["Atyrau"], "kind": ["mining_license"]}
    assert completion["skip_duplicates"] is True


def test_similar_excludes_unsearchable(compiler: QueryCompiler) -> None:
    request = compiler.compile_index_similar("listings", "k1", limit=7)

    clause = request["query"]["bool"]["must"][0]["more_like_this"]
    assert clause["like"] == [{"_index": "listings", "_id": "k1"}]
    assert "title" in clause["fields"] and "description" in clause["fields"]
    assert request["query"]["bool"]["filter"] == [
        {"terms": {"status": ["active", "pending"]}}
    ]
    assert request["size"] == 7
    assert request["sort"][0] == {"_score": {"order": "desc"}}
