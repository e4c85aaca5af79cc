"""FastAPI application entry point with lifespan management."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from hybrid_search.config import settings
from hybrid_search.errors import (
    AllProvidersFailed,
    ConfigurationError,
    ProviderNotFoundError,
    SearchTimeoutError,
)
from hybrid_search.models import (
    HealthResponse,
    HybridSearchResponse,
    ProvidersResponse,
    StatusResponse,
)
from hybrid_search.pipeline.context import SearchContext
from hybrid_search.pipeline.orchestrator import SearchOrchestrator
from hybrid_search.utils.logging import configure_logging

logger = structlog.get_logger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load the search configuration at startup and close providers on shutdown."""
    global _startup_time
    configure_logging(settings.environment, settings.log_level)
    log = structlog.get_logger(__name__)

    log.info(
        "hybrid_search.startup",
        environment=settings.environment,
        port=settings.port,
        config=str(settings.search_config_path),
    )

    # Invalid configuration aborts startup.
    context = SearchContext.from_settings(settings)
    app.state.orchestrator = SearchOrchestrator(context)

    _startup_time = time.time()
    log.info(
        "hybrid_search.ready",
        providers=len(context.registry),
        enabled=len(context.registry.list_enabled()),
        strategies=list(context.config.strategies),
    )

    yield

    log.info("hybrid_search.shutdown")
    await app.state.orchestrator.close()


app = FastAPI(
    title="Hybrid Search",
    description="Routes queries across subprocess-tool and direct-API search providers.",
    version="0.1.0",
    lifespan=lifespan,
)


def _orchestrator() -> SearchOrchestrator:
    return app.state.orchestrator


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/search", response_model=HybridSearchResponse, summary="Run a hybrid search")
async def search(
    q: str = Query(..., min_length=1, max_length=512, description="Search query or URL"),
    limit: int = Query(
        default=settings.default_max_results, ge=1, le=100, description="Maximum results to return"
    ),
    strategy: str | None = Query(default=None, description="Routing strategy name"),
    providers: str | None = Query(
        default=None, description="Comma-separated provider ids; overrides routing"
    ),
    deadline_ms: int | None = Query(default=None, ge=1, description="Request deadline in ms"),
) -> HybridSearchResponse:
    """Classify, route, execute and aggregate one query."""
    if not q.strip():
        raise HTTPException(status_code=400, detail="Query cannot be blank.")

    explicit = [p.strip() for p in providers.split(",") if p.strip()] if providers else None

    return await _orchestrator().hybrid_search(
        query=q.strip(),
        max_results=limit,
        strategy=strategy,
        providers=explicit,
        deadline_seconds=deadline_ms / 1000 if deadline_ms else None,
    )


@app.get("/status", response_model=StatusResponse, summary="Provider status and performance")
async def status() -> StatusResponse:
    return _orchestrator().status()


@app.get("/providers", response_model=ProvidersResponse, summary="Provider configuration")
async def providers() -> ProvidersResponse:
    return _orchestrator().providers_info()


@app.get(
    "/providers/{provider_id}",
    response_model=ProvidersResponse,
    summary="Configuration of one provider",
)
async def provider(provider_id: str) -> ProvidersResponse:
    return _orchestrator().providers_info(provider_id)


@app.get("/health", response_model=HealthResponse, summary="Service health check")
async def health() -> HealthResponse:
    """Liveness plus provider counts; never touches a provider."""
    uptime = time.time() - _startup_time if _startup_time else 0.0
    context = _orchestrator().context
    enabled = len(context.registry.list_enabled())

    return HealthResponse(
        status="ok" if enabled else "degraded",
        providers_enabled=enabled,
        providers_connected=len(context.connections.connected_ids()),
        uptime_seconds=round(uptime, 1),
    )


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.warning("request.configuration_error", path=str(request.url), error=str(exc))
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ProviderNotFoundError)
async def provider_not_found_handler(request: Request, exc: ProviderNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AllProvidersFailed)
async def all_providers_failed_handler(request: Request, exc: AllProvidersFailed) -> JSONResponse:
    logger.warning("request.all_providers_failed", path=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=502,
        content={
            "detail": str(exc),
            "attempted": [e.provider for e in exc.errors],
            "errors": [e.model_dump() for e in exc.errors],
        },
    )


@app.exception_handler(SearchTimeoutError)
async def search_timeout_handler(request: Request, exc: SearchTimeoutError) -> JSONResponse:
    logger.warning("request.deadline_exceeded", path=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=504,
        content={
            "detail": str(exc),
            "errors": [e.model_dump() for e in exc.errors],
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all error handler that logs and returns a structured response."""
    logger.error("unhandled_exception", path=str(request.url), error=str(exc))
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error.", "error": str(exc)},
    )


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run("hybrid_search.main:app", host="0.0.0.0", port=settings.port)
