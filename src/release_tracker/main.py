"""FastAPI status application for the release tracker.

A small read-only surface for whatever scheduler or notifier drives the
tracker:
- GET /health - Health check for load balancers and monitoring
- GET /rate-limit - Current upstream rate-limit state
- GET /users/{user}/releases - Refresh and return a user's latest releases

State is kept in memory for the lifetime of the process and written to the
configured state file on shutdown.

To run locally:
    uvicorn release_tracker.main:app --reload --port 8000
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from release_tracker.config import load_settings
from release_tracker.errors import (
    BatchRefreshError,
    NotFound,
    RateLimited,
    UpstreamError,
)
from release_tracker.logging_config import get_logger, setup_logging
from release_tracker.schemas import LastReleases, RateLimit
from release_tracker.state import load_state_file, save_state_file
from release_tracker.tracker import ReleaseTracker

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Application Lifespan (startup/shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the tracker once at startup and persist its state at shutdown."""
    setup_logging()
    settings = load_settings(os.environ.get("RELEASE_TRACKER_CONFIG", "tracker.yml"))
    store = load_state_file(settings.state_path)
    app.state.tracker = ReleaseTracker(settings, store=store)
    yield
    save_state_file(store, settings.state_path)
    await app.state.tracker.aclose()


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Release Tracker",
    description="Latest releases of starred GitHub repositories",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimited)
async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
    headers = {}
    if exc.resets_at is not None:
        headers["X-RateLimit-Reset"] = str(int(exc.resets_at.timestamp()))
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "detail": str(exc)},
        headers=headers,
    )


@app.exception_handler(BatchRefreshError)
async def batch_error_handler(request: Request, exc: BatchRefreshError) -> JSONResponse:
    status_code = 429 if any(isinstance(f, RateLimited) for f in exc.failures) else 502
    return JSONResponse(
        status_code=status_code,
        content={
            "error": "refresh_failed",
            "detail": str(exc),
            "refreshed": len(exc.partial),
        },
    )


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"error": "not_found", "detail": str(exc)},
    )


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.error("upstream_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=502,
        content={"error": "upstream_error", "detail": str(exc)},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/rate-limit", response_model=RateLimit)
async def rate_limit(request: Request) -> RateLimit:
    tracker: ReleaseTracker = request.app.state.tracker
    return await tracker.rate_limit()


@app.get("/users/{user}/releases", response_model=LastReleases)
async def user_releases(user: str, request: Request) -> LastReleases:
    """Refresh and return the latest releases of a user's starred repos.

    Repositories whose cached data is still fresh are answered from the
    cache, so repeated calls are cheap on the rate limit.
    """
    tracker: ReleaseTracker = request.app.state.tracker
    return await tracker.last_releases(user)
