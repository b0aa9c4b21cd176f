"""Projection of canonical listings into search index documents."""

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from listing_search.errors import MappingError
from listing_search.listings.schemas import (
    INTERNAL_FIELDS,
    ListingKind,
    ListingRecord,
    PublicListing,
)

KIND_KEYWORDS: dict[ListingKind, tuple[str, ...]] = {
    ListingKind.MINING_LICENSE: ("mining", "license", "extraction"),
    ListingKind.EXPLORATION_LICENSE: ("exploration", "survey", "geological"),
    ListingKind.MINERAL_OCCURRENCE: ("occurrence", "deposit", "discovery"),
}

RECENCY_WINDOW = timedelta(days=30)
MAX_BOOST = 2.0


class GeoPoint(BaseModel):
    """WGS84 point as stored in the geo_point field."""

    lat: float
    lon: float


class IndexDocument(PublicListing):
    """Denormalized, query-optimized projection of a listing.

    Attributes:
        search_text: Concatenated searchable text.
        search_keywords: Sorted, lower-cased keyword set.
        boost_score: Ranking multiplier in [1.0, 2.0].
        location: Geo point, absent when coordinates are incomplete.
    """

    search_text: str
    search_keywords: list[str]
    boost_score: float
    location: GeoPoint | None = None

    def to_source(self) -> dict[str, Any]:
        """Render the document body sent to the index.

        Returns:
            JSON-compatible document including the completion input.
        """
        source = self.model_dump(mode="json", exclude={"location"})
        if self.location is not None:
            source["location"] = self.location.model_dump()
        source["suggest"] = {
            "input": [self.title],
            "contexts": {"region": [self.region], "kind": [self.kind.value]},
        }
        return source


def compute_boost_score(record: ListingRecord, now: datetime) -> float:
    """Compute the ranking multiplier for a listing.

    Args:
        record: Canonical listing.
        now: Reference time for the recency bonus.

    Returns:
        Boost in [1.0, 2.0].
    """
    boost = 1.0
    if record.verified:
        boost += 0.3
    if record.featured:
        boost += 0.5
    boost += min(max(record.view_count, 0) / 1000, 0.2)
    if now - record.created_at < RECENCY_WINDOW:
        boost += 0.1
    return round(min(boost, MAX_BOOST), 4)


def extract_keywords(record: ListingRecord) -> list[str]:
    """Collect lower-cased keywords for exact-term matching."""
    keywords = {record.kind.value, *KIND_KEYWORDS[record.kind]}
    for value in (record.mineral, record.region):
        if value and value.strip():
            keywords.add(value.strip().lower())
    return sorted(keywords)


def build_search_text(record: ListingRecord) -> str:
    """Join the free-text fields a query should reach."""
    parts = [
        record.title,
        record.description,
        record.region,
        record.mineral,
        record.kind.value.replace("_", " "),
        record.license_number or "",
    ]
    return " ".join(p.strip() for p in parts if p and p.strip())


def _location(record: ListingRecord) -> GeoPoint | None:
    if record.latitude is None or record.longitude is None:
        return None
    if not -90 <= record.latitude <= 90:
        raise MappingError(record.id, f"latitude {record.latitude} out of range")
    if not -180 <= record.longitude <= 180:
        raise MappingError(record.id, f"longitude {record.longitude} out of range")
    return GeoPoint(lat=record.latitude, lon=record.longitude)


def to_document(record: ListingRecord, now: datetime | None = None) -> IndexDocument:
    """Project a canonical listing into an index document.

    Deterministic for a given record and reference time. Internal fields
    never reach the document.

    Args:
        record: Canonical listing.
        now: Reference time for recency boost. Defaults to current UTC time.

    Returns:
        The index document.

    Raises:
        MappingError: If the record cannot be represented in the index.
    """
    now = now or datetime.now(UTC)
    public = record.model_dump(exclude=set(INTERNAL_FIELDS))
    return IndexDocument(
        **public,
        search_text=build_search_text(record),
        search_keywords=extract_keywords(record),
        boost_score=compute_boost_score(record, now),
        location=_location(record),
    )
