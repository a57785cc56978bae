"""
FastAPI application for smart-topics.

Provides REST API for:
- Topic rebuilds per user
- The scheduled nightly refresh
- Pin/archive user actions
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import get_settings
from smart_topics import __version__
from smart_topics.core.errors import TopicEngineError
from smart_topics.core.records import utcnow
from smart_topics.db.database import dispose_engine, get_async_engine, init_db

settings = get_settings()


async def _check_database_health() -> tuple[str, str | None]:
    """
    Check database connectivity.

    Returns:
        Tuple of (status, error_message). Status is "ok" or "error".
    """
    try:
        async with get_async_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "ok", None
    except SQLAlchemyError as e:
        return "error", str(e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    logger.info("Starting smart-topics service...")
    await init_db()
    logger.info(f"Service started on {settings.api_host}:{settings.api_port}")

    yield

    # Shutdown
    logger.info("Shutting down smart-topics service...")
    await dispose_engine()


app = FastAPI(
    title="Smart Topics",
    description="""
    Groups a user's saved notes into topics that keep their identity across rebuilds.

    ## Data Flow

    ```
    Notes
        ↓ embeddings (cached per model + content hash)
    Vectors
        ↓ DBSCAN (k-means fallback)
    Clusters
        ↓ match against existing topics
    Topics + members + event timelines
    ```
    """,
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TopicEngineError)
async def topic_engine_error_handler(request: Request, exc: TopicEngineError) -> JSONResponse:
    """Map classified engine failures to JSON with their HTTP status."""
    if exc.http_status >= 500:
        logger.error(f"{request.url.path} failed: [{exc.kind.value}] {exc.message}")
    else:
        logger.warning(f"{request.url.path} rejected: [{exc.kind.value}] {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ========================================
# Health & Status Endpoints
# ========================================


@app.get("/", tags=["Health"])
def root() -> dict[str, str]:
    """Root endpoint returning service info."""
    return {
        "service": "smart-topics",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, Any]:
    """Health check with an actual database round trip."""
    db_status, db_error = await _check_database_health()
    overall_status = "healthy" if db_status == "ok" else "unhealthy"

    result: dict[str, Any] = {
        "status": overall_status,
        "timestamp": utcnow().isoformat(),
        "components": {
            "database": db_status,
            "naming": "configured" if settings.has_naming_configured() else "not_configured",
        },
        "config": {
            "embedding": settings.get_embedding_config(),
            "topics": settings.get_topic_config(),
        },
    }
    if db_error:
        result["errors"] = {"database": db_error}
    return result


# ========================================
# Import and mount routers
# ========================================

from smart_topics.api.routers import topics_router  # noqa: E402

app.include_router(topics_router.router, prefix="/api/topics", tags=["Topics"])
