"""Durable storage for notifications that exhausted their retries."""

from datetime import UTC, datetime

from sqlalchemy import (
    Column,
    DateTime,
    Engine,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    func,
    insert,
    select,
)

from listing_search.events.types import ChangeNotification
from listing_search.listings.store import translate_store_errors
from listing_search.sync.schemas import DeadLetter

metadata = MetaData()

dead_letters = Table(
    "sync_dead_letters",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("listing_id", String(64), nullable=False, index=True),
    Column("operation", String(16), nullable=False),
    Column("occurred_at", DateTime(timezone=True), nullable=False),
    Column("reason", Text, nullable=False),
    Column("attempts", Integer, nullable=False),
    Column("failed_at", DateTime(timezone=True), nullable=False),
)


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


class DeadLetterStore:
    """SQL table of dead-lettered notifications.

    Blocking; async callers run methods through asyncio.to_thread.
    """

    def __init__(self, engine: Engine) -> None:
        """Initialize dead letter store.

        Args:
            engine: Engine of the database holding the dead letter table.
        """
        self._engine = engine

    def create_schema(self) -> None:
        """Create the dead letter table if missing."""
        metadata.create_all(self._engine)

    def add(self, notification: ChangeNotification, reason: str, attempts: int) -> int:
        """Record a dead-lettered notification.

        Returns:
            Row id of the dead letter.
        """
        values = {
            "listing_id": notification.id,
            "operation": notification.operation.value,
            "occurred_at": notification.occurred_at,
            "reason": reason[:2000],
            "attempts": attempts,
            "failed_at": datetime.now(UTC),
        }
        with translate_store_errors("dead_letter_add"), self._engine.begin() as conn:
            result = conn.execute(insert(dead_letters).values(**values))
            return int(result.inserted_primary_key[0])

    def list_entries(self, limit: int = 100) -> list[DeadLetter]:
        """Return the oldest dead letters first."""
        stmt = select(dead_letters).order_by(dead_letters.c.id).limit(limit)
        with translate_store_errors("dead_letter_list"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            DeadLetter(
                **{
                    **row,
                    "occurred_at": _utc(row["occurred_at"]),
                    "failed_at": _utc(row["failed_at"]),
                }
            )
            for row in rows
        ]

    def remove(self, ids: list[int]) -> int:
        """Delete dead letters by row id."""
        if not ids:
            return 0
        with translate_store_errors("dead_letter_remove"), self._engine.begin() as conn:
            result = conn.execute(delete(dead_letters).where(dead_letters.c.id.in_(ids)))
        return result.rowcount

    def count(self) -> int:
        """Number of stored dead letters."""
        stmt = select(func.count()).select_from(dead_letters)
        with translate_store_errors("dead_letter_count"), self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())
