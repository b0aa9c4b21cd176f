"""SQLAlchemy adapter for the canonical listing store."""

import math
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Engine,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.pool import StaticPool

from listing_search.errors import MappingError, TransientBackendError
from listing_search.listings.schemas import ListingRecord, ListingStatus

logger = structlog.get_logger()

metadata = MetaData()

listings = Table(
    "listings",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("kind", String(32), nullable=False, index=True),
    Column("title", String(300), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("mineral", String(64), nullable=False, index=True),
    Column("region", String(64), nullable=False, index=True),
    Column("price", Float),
    Column("area", Float),
    Column("latitude", Float),
    Column("longitude", Float),
    Column("status", String(16), nullable=False, index=True),
    Column("verified", Boolean, nullable=False, default=False),
    Column("featured", Boolean, nullable=False, default=False),
    Column("view_count", Integer, nullable=False, default=0),
    Column("favorite_count", Integer, nullable=False, default=0),
    Column("license_number", String(64)),
    Column("license_expiry", Date),
    Column("exploration_stage", String(64)),
    Column("exploration_budget", Float),
    Column("discovery_date", Date),
    Column("geological_confidence", String(32)),
    Column("seller_id", String(64)),
    Column("moderation_notes", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def _null_safe(fn: Callable[[float], float]) -> Callable[[float | None], float | None]:
    def wrapper(value: float | None) -> float | None:
        return None if value is None else fn(value)

    return wrapper


_SQLITE_MATH: dict[str, Callable[[float], float]] = {
    "radians": math.radians,
    "sin": math.sin,
    "cos": math.cos,
    # clamp rounding noise so antipodal points stay in the domain
    "asin": lambda x: math.asin(max(-1.0, min(1.0, x))),
    "sqrt": lambda x: math.sqrt(max(0.0, x)),
}


def _register_sqlite_math(dbapi_connection: Any, _connection_record: Any) -> None:
    """Expose the trigonometric functions the haversine filter needs."""
    for name, fn in _SQLITE_MATH.items():
        dbapi_connection.create_function(name, 1, _null_safe(fn), deterministic=True)


def create_store_engine(url: str, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine for the listing store.

    SQLite engines get the math functions used by geo-radius filters
    registered on every new connection.

    Args:
        url: SQLAlchemy database URL.
        echo: Log emitted SQL.

    Returns:
        Configured engine.
    """
    kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _register_sqlite_math)
    return engine


@contextmanager
def translate_store_errors(operation: str) -> Iterator[None]:
    """Map connection-level SQLAlchemy failures to TransientBackendError.

    Args:
        operation: Name of the store operation for error context.
    """
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        raise TransientBackendError("store", operation, str(exc.orig or exc)) from exc


def row_to_record(row: Any) -> ListingRecord:
    """Validate a result row into a ListingRecord.

    Raises:
        MappingError: If the row does not describe a valid listing.
    """
    data = dict(row)
    try:
        return ListingRecord.model_validate(data)
    except ValidationError as exc:
        raise MappingError(str(data.get("id", "?")), str(exc)) from exc


def record_values(record: ListingRecord) -> dict[str, Any]:
    """Column values for a record, with enums stored as their plain values."""
    values = record.model_dump()
    values["kind"] = record.kind.value
    values["status"] = record.status.value
    return values


@dataclass
class StorePage:
    """One keyset page of searchable records.

    Attributes:
        records: Valid records in id order.
        invalid_ids: Rows that failed validation.
        last_id: Highest id seen on this page, used as the next cursor.
    """

    records: list[ListingRecord] = field(default_factory=list)
    invalid_ids: list[str] = field(default_factory=list)
    last_id: str | None = None


class ListingStore:
    """Read access to canonical listings plus write helpers for tooling.

    All methods are blocking; async callers run them through
    asyncio.to_thread.
    """

    def __init__(
        self,
        engine: Engine,
        searchable_statuses: Iterable[str] = ("active", "pending"),
    ) -> None:
        """Initialize store adapter.

        Args:
            engine: SQLAlchemy engine bound to the canonical database.
            searchable_statuses: Statuses whose records belong in the index.
        """
        self._engine = engine
        self._searchable = frozenset(ListingStatus(s).value for s in searchable_statuses)

    @property
    def engine(self) -> Engine:
        """Underlying SQLAlchemy engine."""
        return self._engine

    @property
    def searchable_statuses(self) -> frozenset[str]:
        """Statuses whose records are eligible for search."""
        return self._searchable

    def is_searchable(self, record: ListingRecord) -> bool:
        """Check whether a record belongs in the search index."""
        return record.status.value in self._searchable

    def create_schema(self) -> None:
        """Create the listings table if missing (development and tests)."""
        metadata.create_all(self._engine)

    def ping(self) -> None:
        """Run a trivial query to verify connectivity.

        Raises:
            TransientBackendError: If the database is unreachable.
        """
        with translate_store_errors("ping"), self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def fetch(self, listing_id: str) -> ListingRecord | None:
        """Fetch the current state of a listing.

        Args:
            listing_id: Listing identifier.

        Returns:
            The record, or None if it does not exist.

        Raises:
            MappingError: If the stored row is malformed.
            TransientBackendError: If the database is unreachable.
        """
        stmt = select(listings).where(listings.c.id == listing_id)
        with translate_store_errors("fetch"), self._engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return row_to_record(row) if row is not None else None

    def fetch_searchable_page(self, after_id: str | None, limit: int) -> StorePage:
        """Fetch the next keyset page of searchable records ordered by id.

        Args:
            after_id: Exclusive lower bound on id, None for the first page.
            limit: Maximum rows to read.

        Returns:
            Page of records; an empty page marks the end of enumeration.
        """
        stmt = (
            select(listings)
            .where(listings.c.status.in_(sorted(self._searchable)))
            .order_by(listings.c.id)
            .limit(limit)
        )
        if after_id is not None:
            stmt = stmt.where(listings.c.id > after_id)

        with translate_store_errors("enumerate"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        page = StorePage()
        for row in rows:
            page.last_id = row["id"]
            try:
                page.records.append(row_to_record(row))
            except MappingError as exc:
                logger.warning("store_record_invalid", listing_id=exc.listing_id)
                page.invalid_ids.append(exc.listing_id)
        return page

    def iter_searchable(self, batch_size: int = 500) -> Iterator[list[ListingRecord]]:
        """Enumerate every searchable record in id-ordered batches.

        Args:
            batch_size: Rows per page.

        Yields:
            Non-empty batches of records.
        """
        cursor: str | None = None
        while True:
            page = self.fetch_searchable_page(cursor, batch_size)
            if page.last_id is None:
                return
            if page.records:
                yield page.records
            cursor = page.last_id

    def count_searchable(self) -> int:
        """Count records eligible for the index."""
        stmt = select(func.count()).select_from(listings).where(
            listings.c.status.in_(sorted(self._searchable))
        )
        with translate_store_errors("count"), self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    def searchable_ids(self) -> set[str]:
        """Return the ids of all records eligible for the index."""
        stmt = select(listings.c.id).where(listings.c.status.in_(sorted(self._searchable)))
        with translate_store_errors("ids"), self._engine.connect() as conn:
            return set(conn.execute(stmt).scalars())

    def save(self, record: ListingRecord) -> None:
        """Insert or replace a listing.

        Args:
            record: Listing to persist.
        """
        values = record_values(record)
        with translate_store_errors("save"), self._engine.begin() as conn:
            result = conn.execute(
                update(listings).where(listings.c.id == record.id).values(**values)
            )
            if result.rowcount == 0:
                conn.execute(insert(listings).values(**values))

    def remove(self, listing_id: str) -> bool:
        """Delete a listing.

        Args:
            listing_id: Listing identifier.

        Returns:
            True if a row was deleted.
        """
        with translate_store_errors("remove"), self._engine.begin() as conn:
            result = conn.execute(delete(listings).where(listings.c.id == listing_id))
        return result.rowcount > 0
