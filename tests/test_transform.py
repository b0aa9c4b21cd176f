"""Document transformer tests."""

from datetime import timedelta

import pytest

from factories import NOW, make_listing
from listing_search.errors import MappingError
from listing_search.listings.schemas import ListingKind
from listing_search.search.transform import (
    MAX_BOOST,
    compute_boost_score,
    extract_keywords,
    to_document,
)


def test_plain_old_listing_has_base_boost() -> None:
    """An unverified, unfeatured, unviewed old listing scores 1.0."""
    record = make_listing("a", view_count=0)
    assert compute_boost_score(record, NOW) == 1.0


def test_boost_rewards_verification_and_promotion() -> None:
    """Verified and featured listings outrank plain ones."""
    plain = make_listing("a", view_count=0)
    verified = make_listing("b", view_count=0, verified=True)
    featured = make_listing("c", view_count=0, featured=True)
    assert compute_boost_score(plain, NOW) < compute_boost_score(verified, NOW)
    assert compute_boost_score(verified, NOW) < compute_boost_score(featured, NOW)


def test_view_bonus_is_capped() -> None:
    """Views stop adding to the boost past the cap."""
    some = make_listing("a", view_count=100_000)
    more = make_listing("b", view_count=10_000_000)
    assert compute_boost_score(some, NOW) == compute_boost_score(more, NOW)


def test_recent_listing_gets_recency_bonus() -> None:
    """Listings created within the recency window score higher."""
    old = make_listing("a", created_at=NOW - timedelta(days=60))
    new = make_listing("b", created_at=NOW - timedelta(days=2))
    assert compute_boost_score(new, NOW) > compute_boost_score(old, NOW)


def test_boost_never_exceeds_maximum() -> None:
    """Boost is capped regardless of signals."""
    record = make_listing(
        "a",
        verified=True,
        featured=True,
        view_count=10**9,
        created_at=NOW - timedelta(hours=1),
    )
    assert compute_boost_score(record, NOW) <= MAX_BOOST


def test_keywords_are_sorted_unique_and_lowercase() -> None:
    """Keywords combine kind terms with mineral and region."""
    record = make_listing(
        "a",
        kind=ListingKind.EXPLORATION_LICENSE,
        mineral="Gold",
        region="Akmola",
    )
    keywords = extract_keywords(record)
    assert keywords == sorted(set(keywords))
    assert {"exploration", "survey", "geological", "gold", "akmola"} <= set(keywords)
    assert all(k == k.lower() for k in keywords)


def test_document_strips_internal_fields() -> None:
    """Moderation notes never reach the index."""
    source = to_document(make_listing("a"), NOW).to_source()
    assert "moderation_notes" not in source
    assert source["id"] == "a"


def test_document_has_location_and_suggest_contexts() -> None:
    """Coordinates become a geo point and the title a completion input."""
    source = to_document(make_listing("a", region="Atyrau"), NOW).to_source()
    assert source["location"] == {"lat": 49.8, "lon": 73.1}
    assert source["suggest"]["input"] == ["Deposit a"]
    assert source["suggest"]["contexts"] == {"region": ["Atyrau"], "kind": ["mining_license"]}


def test_location_omitted_when_a_coordinate_is_missing() -> None:
    """A single coordinate is not enough for a geo point."""
    document = to_document(make_listing("a", longitude=None), NOW)
    assert document.location is None
    assert "location" not in document.to_source()


def test_out_of_range_coordinates_raise_mapping_error() -> None:
    """Impossible coordinates cannot be indexed."""
    with pytest.raises(MappingError) as exc_info:
        to_document(make_listing("bad", latitude=123.0), NOW)
    assert exc_info.value.listing_id == "bad"


def test_transform_is_deterministic() -> None:
    """Same record and reference time yield the same document."""
    record = make_listing("a", description="Tengiz field near the coast")
    assert to_document(record, NOW).to_source() == to_document(record, NOW).to_source()


def test_search_text_includes_license_number() -> None:
    """License numbers are searchable as text."""
    document = to_document(make_listing("a", license_number="KZ-778"), NOW)
    assert "KZ-778" in document.search_text
