"""Elasticsearch client construction and backend call guards."""

import asyncio
from collections.abc import Awaitable, Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

import structlog
from elasticsearch import ApiError, AsyncElasticsearch, TransportError

from listing_search.config import Settings
from listing_search.errors import TransientBackendError

logger = structlog.get_logger()

T = TypeVar("T")

_RETRYABLE_STATUS = frozenset({408, 429})


def create_elasticsearch_client(settings: Settings) -> AsyncElasticsearch:
    """Build the async Elasticsearch client for the configured node.

    Args:
        settings: Service configuration.

    Returns:
        Unconnected client; connections are opened lazily.
    """
    kwargs: dict[str, Any] = {
        "request_timeout": settings.index_write_timeout,
        "retry_on_timeout": False,
        "max_retries": 0,
    }
    if settings.elasticsearch_api_key:
        kwargs["api_key"] = settings.elasticsearch_api_key
    return AsyncElasticsearch(settings.elasticsearch_url, **kwargs)


def is_retryable(exc: ApiError) -> bool:
    """Check whether an API error status is worth retrying."""
    status = exc.meta.status if exc.meta is not None else 0
    return status >= 500 or status in _RETRYABLE_STATUS


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """Map Elasticsearch failures to TransientBackendError.

    Connection failures, timeouts and retryable statuses become transient
    errors. Other API errors propagate unchanged for the caller to handle.

    Args:
        operation: Index operation name for error context.
    """
    try:
        yield
    except TransportError as exc:
        raise TransientBackendError("index", operation, str(exc)) from exc
    except ApiError as exc:
        if is_retryable(exc):
            raise TransientBackendError("index", operation, str(exc)) from exc
        raise


def _discard_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


async def bounded(
    awaitable: Awaitable[T],
    *,
    timeout: float,
    backend: str,
    operation: str,
) -> T:
    """Await a backend call with a deadline.

    The call is shielded: on timeout it keeps running in the background
    and its outcome is discarded.

    Args:
        awaitable: Backend call to run.
        timeout: Seconds allowed.
        backend: Backend name for error context.
        operation: Operation name for error context.

    Returns:
        The call's result.

    Raises:
        TransientBackendError: If the deadline passes.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except TimeoutError as exc:
        task.add_done_callback(_discard_result)
        logger.warning(
            "backend_call_timeout",
            backend=backend,
            operation=operation,
            timeout_seconds=timeout,
        )
        raise TransientBackendError(
            backend, operation, f"timed out after {timeout}s"
        ) from exc


def response_body(response: Any) -> Any:
    """Unwrap an elasticsearch ObjectApiResponse to its body."""
    return getattr(response, "body", response)
