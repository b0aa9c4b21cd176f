"""Change notification types emitted by the listing store."""
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


class ChangeOperation(str, Enum):
    """Mutation kind reported by the change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ChangeNotification(BaseModel):
    """A single listing mutation observed in the canonical store.

    Notifications carry no payload: consumers re-read the record so
    that a late delivery never resurrects stale state.

    Attributes:
        id: Identifier of the mutated listing.
        operation: Kind of mutation.
        occurred_at: When the mutation was observed (UTC).
    """

    id: str = Field(min_length=1, max_length=64, description="Listing identifier")
    operation: ChangeOperation = Field(description="Mutation kind")
    occurred_at: datetime = Field(
        default_factory=_utc_now, description="Observation timestamp (UTC)"
    )
