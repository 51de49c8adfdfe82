# @TEST tests/test_api_admin.py

"""Operator endpoints for the embedding retry queue.

Dead-lettered embedding jobs are only visible here: list them, send one
back to the queue, purge old ones, inspect queue counts and index
coverage, or queue a re-embedding of every work note (or only of the
notes that have no vectors yet).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from notesearch.constants import EmbeddingOperation, RetryStatus
from notesearch.database import get_db
from notesearch.search.vector_index import VectorIndex
from notesearch.services.embedding_retry_queue import DeadLetterPage, EmbeddingRetryQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class RetryResponse(BaseModel):
    id: str
    status: RetryStatus


class PurgeResponse(BaseModel):
    purged: int


class QueueStatsResponse(BaseModel):
    counts: dict[str, int]
    total: int


class ReindexResponse(BaseModel):
    enqueued: int
    operation_type: EmbeddingOperation
    only_missing: bool = False


class EmbeddingStatsResponse(BaseModel):
    total_notes: int
    embedded_notes: int
    pending_notes: int


# --- Dead-letter triage ---


@router.get("/embedding-failures", response_model=DeadLetterPage)
async def list_embedding_failures(
    limit: int = Query(50, ge=1, le=200),  # noqa: B008
    offset: int = Query(0, ge=0),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> DeadLetterPage:
    """Dead-lettered embedding jobs, most recent first, with note titles."""
    return await EmbeddingRetryQueue(db).find_dead_letter_items(limit=limit, offset=offset)


@router.post("/embedding-failures/{item_id}/retry", response_model=RetryResponse)
async def retry_embedding_failure(
    item_id: str,
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> RetryResponse:
    """Send a dead-lettered job back to the queue."""
    queue = EmbeddingRetryQueue(db)
    item = await queue.find_by_id(item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Embedding job not found")

    if not await queue.reset_to_pending(item_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Embedding job is {item.status}, only dead-lettered jobs can be retried",
        )

    logger.info("Operator retried embedding job %s (work note %s)", item_id, item.work_id)
    return RetryResponse(id=item_id, status=RetryStatus.PENDING)


@router.delete("/embedding-failures", response_model=PurgeResponse)
async def purge_embedding_failures(
    older_than_days: int | None = Query(None, ge=0),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> PurgeResponse:
    """Delete dead-lettered jobs, optionally only those older than N days."""
    older_than = None
    if older_than_days is not None:
        older_than = datetime.now(UTC) - timedelta(days=older_than_days)
    purged = await EmbeddingRetryQueue(db).purge_dead_letter(older_than)
    return PurgeResponse(purged=purged)


# --- Queue ---


@router.get("/embedding-queue/stats", response_model=QueueStatsResponse)
async def get_embedding_queue_stats(
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> QueueStatsResponse:
    counts = await EmbeddingRetryQueue(db).count_by_status()
    return QueueStatsResponse(counts=counts, total=sum(counts.values()))


@router.get("/embeddings/stats", response_model=EmbeddingStatsResponse)
async def get_embedding_stats(
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> EmbeddingStatsResponse:
    """Work notes with and without vectors in the index."""
    coverage = await VectorIndex(db).coverage()
    return EmbeddingStatsResponse(
        total_notes=coverage.total_notes,
        embedded_notes=coverage.embedded_notes,
        pending_notes=coverage.pending_notes,
    )


@router.post("/embeddings/reindex", response_model=ReindexResponse)
async def reindex_embeddings(
    operation_type: EmbeddingOperation = Query(EmbeddingOperation.UPDATE),  # noqa: B008
    only_missing: bool = Query(False),  # noqa: B008
    db: AsyncSession = Depends(get_db),  # noqa: B008
) -> ReindexResponse:
    """Queue an embedding job for every work note, or only for notes without vectors."""
    if operation_type == EmbeddingOperation.DELETE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Bulk reindex only supports create or update jobs",
        )
    enqueued = await EmbeddingRetryQueue(db).enqueue_all(operation_type, only_missing=only_missing)
    return ReindexResponse(enqueued=enqueued, operation_type=operation_type, only_missing=only_missing)
