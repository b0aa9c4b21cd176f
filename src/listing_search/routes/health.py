"""Health check endpoints for liveness and readiness probes."""
import asyncio
from typing import Literal

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from listing_search.errors import TransientBackendError
from listing_search.listings.store import ListingStore
from listing_search.search.orchestrator import SearchOrchestrator

router = APIRouter(prefix="/health", tags=["health"])


class LivenessResponse(BaseModel):
    """Response model for liveness probe.

    Attributes:
        status: Always 'alive' when process is running.
    """

    status: Literal["alive"]


class ReadinessCheck(BaseModel):
    """Individual dependency check result.

    Attributes:
        name: Identifier for the dependency being checked.
        status: Result of the check ('ok' or 'failed').
        required: Whether a failure makes the service not ready.
        message: Error details when status is 'failed'.
    """

    name: str
    status: Literal["ok", "failed"]
    required: bool = True
    message: str | None = None


class ReadinessResponse(BaseModel):
    """Response model for readiness probe.

    Attributes:
        status: Overall readiness ('ready' or 'not_ready').
        checks: List of individual dependency check results.
    """

    status: Literal["ready", "not_ready"]
    checks: list[ReadinessCheck]


async def _check_store(store: ListingStore, timeout: float) -> ReadinessCheck:
    try:
        await asyncio.wait_for(asyncio.to_thread(store.ping), timeout)
    except TransientBackendError as e:
        return ReadinessCheck(name="store", status="failed", message=str(e))
    except TimeoutError:
        return ReadinessCheck(name="store", status="failed", message="Timed out")
    return ReadinessCheck(name="store", status="ok")


async def _check_index(orchestrator: SearchOrchestrator) -> ReadinessCheck:
    # Reads degrade to the store, so the index never blocks readiness
    if await orchestrator.index_available():
        return ReadinessCheck(name="index", status="ok", required=False)
    return ReadinessCheck(
        name="index",
        status="failed",
        required=False,
        message="Serving from fallback store",
    )


@router.get("/live", response_model=LivenessResponse)
async def liveness() -> LivenessResponse:
    """Liveness probe endpoint.

    Returns:
        Liveness status response.
    """
    return LivenessResponse(status="alive")


@router.get("/ready", response_model=ReadinessResponse)
async def readiness(request: Request) -> JSONResponse:
    """Readiness probe endpoint.

    Returns 200 when every required check passes, 503 otherwise.

    Returns:
        Readiness status with individual check results.
    """
    state = request.app.state
    checks = [
        await _check_store(state.store, state.settings.backend_timeout),
        await _check_index(state.orchestrator),
    ]
    ready = all(c.status == "ok" for c in checks if c.required)
    response = ReadinessResponse(
        status="ready" if ready else "not_ready",
        checks=checks,
    )
    code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(content=response.model_dump(), status_code=code)
