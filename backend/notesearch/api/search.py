# @TEST tests/test_api_search.py

"""Search API endpoint.

Provides ``GET /search`` -- hybrid (full-text + semantic) search over work
notes. Retrieval failures only make results sparser; the endpoint answers
422 for malformed filters and never 5xx because a backend is down.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notesearch.config import Settings, get_settings
from notesearch.database import get_session_factory
from notesearch.search.embeddings import build_embedding_service
from notesearch.search.engine import HybridSearchEngine, build_hybrid_engine
from notesearch.search.filters import InvalidFilterError, SearchFilters
from notesearch.search.results import SearchResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["search"])


class SearchResponse(BaseModel):
    """Search API response containing results and metadata."""

    results: list[SearchResult]
    count: int
    query: str
    search_type: str = "hybrid"


# ---------------------------------------------------------------------------
# Engine factory helper (extracted for easy mocking in tests)
# ---------------------------------------------------------------------------


def _build_hybrid_engine(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
) -> HybridSearchEngine:
    """Create a HybridSearchEngine wired to the configured embedding backend."""
    if settings is None:
        settings = get_settings()
    return build_hybrid_engine(session_factory, build_embedding_service(settings), settings)


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@router.get("", response_model=SearchResponse)
async def search(
    q: str = Query(..., description="Search query"),  # noqa: B008
    category: str | None = Query(None, description="Filter by category"),  # noqa: B008
    person_id: str | None = Query(None, description="Filter by involved person"),  # noqa: B008
    department_name: str | None = Query(None, description="Filter by department"),  # noqa: B008
    record_id: str | None = Query(None, description="Restrict to one work note"),  # noqa: B008
    date_from: datetime | None = Query(None, description="Created on or after"),  # noqa: B008
    date_to: datetime | None = Query(None, description="Created on or before"),  # noqa: B008
    limit: int | None = Query(None, description="Maximum number of results"),  # noqa: B008
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),  # noqa: B008
) -> SearchResponse:
    """Search work notes with hybrid lexical + semantic retrieval.

    Returns:
        SearchResponse with fused results, best first.
    """
    logger.info("Search request: query=%r, category=%s, limit=%s", q, category, limit)

    filters = {
        "category": category,
        "person_id": person_id,
        "department_name": department_name,
        "record_id": record_id,
        "date_from": date_from,
        "date_to": date_to,
        "limit": limit,
    }
    engine = _build_hybrid_engine(session_factory)
    try:
        results = await engine.search(q, SearchFilters(**filters))
    except InvalidFilterError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return SearchResponse(results=results, count=len(results), query=q)
