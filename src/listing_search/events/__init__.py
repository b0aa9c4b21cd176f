"""Change feed connecting store mutations to the sync service."""
from listing_search.events.bus import ChangeFeed
from listing_search.events.types import ChangeNotification, ChangeOperation

__all__ = [
    "ChangeFeed",
    "ChangeNotification",
    "ChangeOperation",
]
