"""Pydantic schemas for search requests and responses."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from listing_search.listings.schemas import ListingKind, ListingStatus, PublicListing


class SortField(str, Enum):
    """Orderings a search can request."""

    RELEVANCE = "relevance"
    PRICE = "price"
    AREA = "area"
    CREATED_AT = "created_at"
    VIEW_COUNT = "view_count"
    DISTANCE = "distance"


class SortOrder(str, Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


class GeoFilter(BaseModel):
    """Radius restriction around a point.

    Attributes:
        lat: Center latitude.
        lon: Center longitude.
        radius_km: Radius in kilometres.
    """

    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    radius_km: float = Field(gt=0, le=20_000)


class SearchFilters(BaseModel):
    """Immutable description of a search request.

    Attributes:
        query: Free-text query; empty means match all.
        kind: Listing kinds to include.
        mineral: Minerals to include.
        region: Regions to include.
        status: Statuses to include, intersected with the searchable set.
        price_min: Inclusive lower price bound.
        price_max: Inclusive upper price bound.
        area_min: Inclusive lower area bound.
        area_max: Inclusive upper area bound.
        verified: Restrict to verified (or unverified) listings.
        featured: Restrict to featured (or non-featured) listings.
        geo: Radius restriction.
        sort: Requested ordering.
        order: Sort direction for field sorts.
        page: 1-based page number.
        page_size: Records per page.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    query: str = Field(default="", max_length=200)
    kind: tuple[ListingKind, ...] = ()
    mineral: tuple[str, ...] = ()
    region: tuple[str, ...] = ()
    status: tuple[ListingStatus, ...] = ()
    price_min: float | None = Field(default=None, ge=0)
    price_max: float | None = Field(default=None, ge=0)
    area_min: float | None = Field(default=None, ge=0)
    area_max: float | None = Field(default=None, ge=0)
    verified: bool | None = None
    featured: bool | None = None
    geo: GeoFilter | None = None
    sort: SortField = SortField.RELEVANCE
    order: SortOrder = SortOrder.DESC
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @model_validator(mode="after")
    def check_ranges(self) -> "SearchFilters":
        """Reject inverted ranges and distance sorts without an origin."""
        if (
            self.price_min is not None
            and self.price_max is not None
            and self.price_min > self.price_max
        ):
            raise ValueError("price_min must not exceed price_max")
        if (
            self.area_min is not None
            and self.area_max is not None
            and self.area_min > self.area_max
        ):
            raise ValueError("area_min must not exceed area_max")
        if self.sort is SortField.DISTANCE and self.geo is None:
            raise ValueError("distance sort requires a geo filter")
        return self


class SearchHit(PublicListing):
    """A listing as returned from search.

    Attributes:
        boost_score: Precomputed ranking multiplier.
        score: Engine relevance score, absent on the fallback path.
    """

    model_config = ConfigDict(extra="ignore")

    boost_score: float = 1.0
    score: float | None = None


class FacetBucket(BaseModel):
    """Value/count pair of a terms facet."""

    value: str
    count: int


class PriceBucket(BaseModel):
    """Count of listings in one price range.

    Attributes:
        key: Stable bucket label.
        min: Inclusive lower bound, None when open.
        max: Exclusive upper bound, None when open.
        count: Number of matching listings.
    """

    key: str
    min: float | None = None
    max: float | None = None
    count: int = 0


class Facets(BaseModel):
    """Facet counts over the full filtered result set."""

    kind: list[FacetBucket] = Field(default_factory=list)
    mineral: list[FacetBucket] = Field(default_factory=list)
    region: list[FacetBucket] = Field(default_factory=list)
    price: list[PriceBucket] = Field(default_factory=list)


class SearchResult(BaseModel):
    """Paginated search response envelope.

    Attributes:
        records: Hits for the requested page.
        total: Number of listings matching the filters.
        page: 1-based page number served.
        page_size: Requested page size.
        total_pages: Number of pages at this page size.
        facets: Facet counts independent of pagination.
    """

    records: list[SearchHit]
    total: int
    page: int
    page_size: int
    total_pages: int
    facets: Facets = Field(default_factory=Facets)


class SuggestContext(BaseModel):
    """Optional narrowing for autocomplete."""

    model_config = ConfigDict(frozen=True)

    region: str | None = None
    kind: ListingKind | None = None


class SuggestResponse(BaseModel):
    """Autocomplete response."""

    suggestions: list[str]


class IndexHealth(BaseModel):
    """Search index health summary.

    Attributes:
        index_available: Whether the index answered a bounded probe.
        document_count: Documents in the index, None when unavailable.
    """

    index_available: bool
    document_count: int | None = None


class SimilarResponse(BaseModel):
    """Listings resembling a reference listing.

    Attributes:
        listing_id: Reference listing.
        records: Similar listings, most similar first.
        total: Number of records returned.
    """

    listing_id: str
    records: list[SearchHit]
    total: int
