# FastAPI 앱 엔트리포인트

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from notesearch.config import get_settings
from notesearch.database import engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan: startup and shutdown events.

    The schema itself is managed by Alembic (``alembic upgrade head``).
    """
    logger.info("Work-note search API starting")
    yield
    # Shutdown: dispose the async engine connection pool
    await engine.dispose()


logging.basicConfig(level=get_settings().LOG_LEVEL.upper())

app = FastAPI(
    title="Work-note Search",
    description="Hybrid full-text and semantic search over work notes",
    version="0.1.0",
    lifespan=lifespan,
)

# --- Router includes ---
from notesearch.api.admin import router as admin_router  # noqa: E402
from notesearch.api.search import router as search_router  # noqa: E402

app.include_router(search_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns a simple status response to verify the API is running.
    """
    return {"status": "ok"}
