"""Domain error taxonomy for the search and sync subsystem.

Backend modules translate driver exceptions (Elasticsearch transport errors,
SQLAlchemy operational errors) into these types so that raw backend
exceptions never reach callers.
"""


class SearchServiceError(Exception):
    """Base class for all search service errors."""


class TransientBackendError(SearchServiceError):
    """A backend call failed in a way that may succeed on retry.

    Raised for timeouts, refused connections and server-side failures.
    Sync operations retry it with backoff; read operations degrade to
    the fallback path.

    Attributes:
        backend: Name of the failing backend ("index" or "store").
        operation: Operation that was being attempted.
    """

    def __init__(self, backend: str, operation: str, message: str) -> None:
        super().__init__(f"{backend} {operation} failed: {message}")
        self.backend = backend
        self.operation = operation


class MappingError(SearchServiceError):
    """A single record could not be projected into an index document.

    Never aborts a batch: the affected document is skipped and recorded.

    Attributes:
        listing_id: Identifier of the offending record.
        reason: Human-readable description of the mismatch.
    """

    def __init__(self, listing_id: str, reason: str) -> None:
        super().__init__(f"listing {listing_id}: {reason}")
        self.listing_id = listing_id
        self.reason = reason


class SearchUnavailableError(SearchServiceError):
    """Neither the index nor the fallback store could serve a read."""

    def __init__(self, message: str = "Search is temporarily unavailable") -> None:
        super().__init__(message)


class ReindexInProgressError(SearchServiceError):
    """A full reindex was requested while another one is running."""

    def __init__(self) -> None:
        super().__init__("A full reindex is already in progress")
