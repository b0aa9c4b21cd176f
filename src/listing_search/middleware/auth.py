"""Shared-key protection for admin endpoints."""

import secrets
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

ADMIN_PREFIX = "/api/v1/admin"


class AdminKeyMiddleware(BaseHTTPMiddleware):
    """Requires the X-API-Key header on admin endpoints.

    Search and health endpoints stay public.
    """

    def __init__(self, app: Callable[..., Awaitable[Response]], api_key: str) -> None:
        """Initialize middleware with API key.

        Args:
            app: ASGI application.
            api_key: Expected API key value.
        """
        super().__init__(app)  # type: ignore[arg-type]
        self._api_key = api_key

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Validate the API key for admin paths.

        Returns:
            HTTP response, or 401 if authentication fails.
        """
        if not request.url.path.startswith(ADMIN_PREFIX):
            return await call_next(request)

        provided_key = request.headers.get("X-API-Key", "")
        if not provided_key:
            return JSONResponse(status_code=401, content={"detail": "Missing X-API-Key header"})
        if not secrets.compare_digest(provided_key, self._api_key):
            return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        return await call_next(request)
