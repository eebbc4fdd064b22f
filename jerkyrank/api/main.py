"""
jerkyrank.api.main - FastAPI application entry point
=====================================================

Run with::

    uvicorn jerkyrank.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from jerkyrank.api.deps import get_config  # noqa: E402
from jerkyrank.api.routes.admin import router as admin_router  # noqa: E402
from jerkyrank.api.routes.engagement import router as engagement_router  # noqa: E402
from jerkyrank.database.engine import create_pools, init_db, run_db  # noqa: E402
from jerkyrank.database.seed import seed_achievements  # noqa: E402
from jerkyrank.engine.redis_backend import backend_from_env  # noqa: E402
from jerkyrank.errors import (  # noqa: E402
    ConflictError,
    EngagementError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from jerkyrank.services.engagement_service import EngagementRuntime  # noqa: E402

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[EngagementError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (TransientStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


def _build_runtime() -> EngagementRuntime:
    cfg = get_config()
    pools = create_pools(cfg)
    init_db(pools.interactive)
    seed_achievements(pools.interactive)
    return EngagementRuntime(pools, cfg, cache_backend=backend_from_env())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: build, warm and drain the engine."""
    owned = getattr(app.state, "runtime", None) is None
    if owned:
        app.state.runtime = await run_db(_build_runtime)
    runtime: EngagementRuntime = app.state.runtime

    summary = await run_db(runtime.start)
    if summary is not None:
        logger.info(
            "JerkyRank API started: %d/%d caches warm",
            summary.success_count, summary.success_count + summary.failure_count,
        )
    yield
    logger.info("JerkyRank API shutting down")
    await run_db(runtime.shutdown)
    if owned:
        runtime.pools.dispose()
        runtime.cache.close()
        app.state.runtime = None


async def _engagement_error(request: Request, exc: EngagementError) -> JSONResponse:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return JSONResponse({"detail": str(exc)}, status_code=code)
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        {"detail": "Internal error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def create_app(runtime: EngagementRuntime | None = None) -> FastAPI:
    """Build the application; tests hand in a prepared *runtime*."""
    application = FastAPI(
        title="JerkyRank Engagement API",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.state.runtime = runtime

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(EngagementError, _engagement_error)

    # Mount routers
    application.include_router(engagement_router, prefix="/api")
    application.include_router(admin_router, prefix="/api")
    return application


app = create_app()
