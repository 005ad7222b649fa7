"""Monitoring API: read-only source snapshots plus an admin reset.

Mount ``sources_router`` on any FastAPI app whose ``state.coordinator``
holds the process coordinator, or use ``create_app()``.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from ratekeeper.exceptions import CoordinatorError, UnknownSourceError
from ratekeeper.providers.coordinator import AccessCoordinator

logger = structlog.get_logger(__name__)


def get_coordinator(request: Request) -> AccessCoordinator:
    return request.app.state.coordinator


sources_router = APIRouter(prefix="/sources", tags=["Sources"])


@sources_router.get("")
async def list_sources(
    coordinator: AccessCoordinator = Depends(get_coordinator),
) -> list[dict[str, Any]]:
    """Snapshots for every registered source."""
    return [asdict(status) for status in coordinator.status_all()]


@sources_router.get("/{source}")
async def source_status(
    source: str,
    coordinator: AccessCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    """Queue length, in-flight count, circuit state and provider utilisation."""
    return asdict(coordinator.status(source))


@sources_router.post("/{source}/reset")
async def reset_source(
    source: str,
    coordinator: AccessCoordinator = Depends(get_coordinator),
) -> dict[str, str]:
    """Admin: close the circuit and lift provider suspensions."""
    coordinator.reset_source(source)
    return {"status": "reset", "source": source}


def register_exception_handlers(app: FastAPI) -> None:
    """Map coordinator errors to HTTP responses."""

    @app.exception_handler(UnknownSourceError)
    async def handle_unknown_source(request: Request, exc: UnknownSourceError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content={"code": exc.code, "message": exc.message},
        )

    @app.exception_handler(CoordinatorError)
    async def handle_coordinator(request: Request, exc: CoordinatorError) -> JSONResponse:
        logger.warning("coordinator_error_http", code=exc.code, message=exc.message)
        return JSONResponse(
            status_code=503,
            content={"code": exc.code, "message": exc.message},
        )


def create_app(coordinator: AccessCoordinator) -> FastAPI:
    """Standalone monitoring app bound to ``coordinator``."""
    app = FastAPI(title="ratekeeper", version="0.1.0")
    app.state.coordinator = coordinator
    app.include_router(sources_router)
    register_exception_handlers(app)
    return app
