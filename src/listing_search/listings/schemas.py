"""Pydantic models for canonical mining listings."""

from datetime import UTC, date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ListingKind(str, Enum):
    """License/occurrence variant of a listing."""

    MINING_LICENSE = "mining_license"
    EXPLORATION_LICENSE = "exploration_license"
    MINERAL_OCCURRENCE = "mineral_occurrence"


class ListingStatus(str, Enum):
    """Lifecycle status of a listing in the canonical store."""

    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    DRAFT = "draft"


INTERNAL_FIELDS: frozenset[str] = frozenset({"moderation_notes"})


class PublicListing(BaseModel):
    """Listing fields that may leave the service.

    Attributes:
        id: Globally unique, immutable listing identifier.
        kind: License/occurrence variant.
        title: Listing headline.
        description: Free-text description.
        mineral: Primary mineral name.
        region: Administrative region name.
        price: Asking price in tenge.
        area: Area in hectares.
        latitude: WGS84 latitude, if known.
        longitude: WGS84 longitude, if known.
        status: Lifecycle status.
        verified: Whether the listing passed verification.
        featured: Whether the listing is promoted.
        view_count: Number of detail page views.
        favorite_count: Number of users who saved the listing.
        license_number: State license number (licenses only).
        license_expiry: License expiry date (licenses only).
        exploration_stage: Stage of exploration works.
        exploration_budget: Planned exploration budget.
        discovery_date: Date the occurrence was discovered.
        geological_confidence: Confidence category of reserves.
        seller_id: Identifier of the selling account.
        created_at: Creation timestamp (UTC).
        updated_at: Last modification timestamp (UTC).
    """

    id: str = Field(min_length=1, max_length=64)
    kind: ListingKind
    title: str = Field(min_length=1)
    description: str = ""
    mineral: str
    region: str
    price: float | None = None
    area: float | None = None
    latitude: float | None = None
    longitude: float | None = None
    status: ListingStatus = ListingStatus.ACTIVE
    verified: bool = False
    featured: bool = False
    view_count: int = 0
    favorite_count: int = 0
    license_number: str | None = None
    license_expiry: date | None = None
    exploration_stage: str | None = None
    exploration_budget: float | None = None
    discovery_date: date | None = None
    geological_confidence: str | None = None
    seller_id: str | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps (as returned by SQLite) as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)


class ListingRecord(PublicListing):
    """Canonical listing as stored in the transactional store.

    Read-only from the point of view of the search subsystem.

    Attributes:
        moderation_notes: Internal reviewer notes, never indexed.
    """

    model_config = ConfigDict(frozen=True)

    moderation_notes: str | None = None
