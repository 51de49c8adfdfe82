"""Write-path hook: queue embedding work when a work note changes."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from notesearch.constants import EmbeddingOperation
from notesearch.services.embedding_retry_queue import EmbeddingRetryQueue

logger = logging.getLogger(__name__)


async def on_note_changed(
    session: AsyncSession,
    work_id: str,
    operation: EmbeddingOperation | str,
) -> str | None:
    """Enqueue an embedding job inside the caller's transaction.

    Runs in a SAVEPOINT so a queue failure rolls back only the enqueue and
    never the note write itself. Returns the job id, or None on failure.
    """
    try:
        async with session.begin_nested():
            return await EmbeddingRetryQueue(session).enqueue(work_id, operation)
    except Exception:
        logger.exception("Failed to enqueue %s embedding job for work note %s", operation, work_id)
        return None
