# @TEST tests/test_embedding_worker.py

"""Background worker that drains the embedding retry queue.

Each poll claims due jobs one at a time (a conditional UPDATE, so several
workers can run side by side), writes or deletes the note's vectors, and
either deletes the job or records the failure for backoff/dead-lettering.

Run with ``python -m notesearch.tasks.embedding_worker``.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notesearch.config import Settings, get_settings
from notesearch.constants import EmbeddingOperation, RetryStatus
from notesearch.models import WorkNote
from notesearch.search.embeddings import EmbeddingService, PermanentEmbeddingError, build_embedding_service
from notesearch.search.vector_index import VectorIndex
from notesearch.services.embedding_retry_queue import ClaimedItem, EmbeddingRetryQueue

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunResult:
    """Outcome of one poll."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead_lettered: int = 0


class EmbeddingWorker:
    """Claims queued embedding jobs and keeps the vector index in sync.

    Args:
        session_factory: Factory producing a fresh AsyncSession per step.
        embedding_service: Service used to chunk and embed note text.
        settings: Application settings (defaults to ``get_settings()``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedding_service: EmbeddingService,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._embedding_service = embedding_service
        self._settings = settings or get_settings()

    def _queue(self, session: AsyncSession) -> EmbeddingRetryQueue:
        return EmbeddingRetryQueue(
            session,
            max_attempts=self._settings.EMBEDDING_MAX_ATTEMPTS,
            backoff_base=self._settings.EMBEDDING_BACKOFF_BASE_SECONDS,
            backoff_max=self._settings.EMBEDDING_BACKOFF_MAX_SECONDS,
            lease_seconds=self._settings.WORKER_LEASE_SECONDS,
        )

    async def run_once(self) -> WorkerRunResult:
        """Process up to ``WORKER_BATCH_SIZE`` due jobs."""
        result = WorkerRunResult()

        async with self._session_factory() as session:
            due_items = await self._queue(session).find_due_items(self._settings.WORKER_BATCH_SIZE)

        for item in due_items:
            async with self._session_factory() as session:
                claimed = await self._queue(session).claim(item.id)
                await session.commit()
            if claimed is None:
                # Another worker won the race
                continue

            result.claimed += 1
            try:
                await self._process(claimed)
            except Exception as exc:
                result.failed += 1
                if await self._record_failure(claimed, exc):
                    result.dead_lettered += 1
            else:
                result.succeeded += 1

        if result.claimed:
            logger.info(
                "Embedding worker run: %d claimed, %d succeeded, %d failed, %d dead-lettered",
                result.claimed,
                result.succeeded,
                result.failed,
                result.dead_lettered,
            )
        return result

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Poll until *stop_event* is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Embedding worker started (poll every %.1fs)", self._settings.WORKER_POLL_INTERVAL_SECONDS)

        while not stop_event.is_set():
            try:
                result = await self.run_once()
            except Exception:
                logger.exception("Embedding worker poll failed")
                result = WorkerRunResult()

            # A full batch means more work is probably waiting
            if result.claimed >= self._settings.WORKER_BATCH_SIZE:
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._settings.WORKER_POLL_INTERVAL_SECONDS)
            except TimeoutError:
                pass

        logger.info("Embedding worker stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _process(self, item: ClaimedItem) -> None:
        """Apply one job to the vector index and remove it from the queue.

        The vector write and the job deletion commit together.
        """
        async with self._session_factory() as session:
            index = VectorIndex(session)

            if item.operation_type == EmbeddingOperation.DELETE:
                removed = await index.delete(item.work_id)
                logger.debug("Deleted %d vectors for work note %s", removed, item.work_id)
            else:
                result = await session.execute(
                    select(WorkNote.title, WorkNote.content_raw, WorkNote.category).where(
                        WorkNote.work_id == item.work_id
                    )
                )
                note = result.one_or_none()
                if note is None:
                    # Deleted after the job was queued
                    await index.delete(item.work_id)
                else:
                    text = "\n\n".join(part for part in (note.title, note.content_raw) if part)
                    chunks = await self._embedding_service.embed_chunks(text)
                    await index.upsert(item.work_id, chunks, category=note.category)

            if not await self._queue(session).complete(item.id, item.claim_token):
                logger.warning("Lease on embedding job %s expired before completion", item.id)
            await session.commit()

    async def _record_failure(self, item: ClaimedItem, exc: Exception) -> bool:
        """Store the failure; returns True when the job was dead-lettered."""
        retryable = not isinstance(exc, PermanentEmbeddingError)
        logger.warning(
            "Embedding job %s (%s %s) failed: %s",
            item.id,
            item.operation_type,
            item.work_id,
            exc,
        )
        details = {
            "error_type": type(exc).__name__,
            "operation": item.operation_type.value,
            "attempt": item.attempt_count + 1,
            "retryable": retryable,
        }
        try:
            async with self._session_factory() as session:
                updated = await self._queue(session).record_failure(
                    item.id, item.claim_token, str(exc) or type(exc).__name__, details
                )
                await session.commit()
        except Exception:
            logger.exception("Could not record failure of embedding job %s", item.id)
            return False
        return updated is not None and updated.status == RetryStatus.DEAD_LETTER


async def _run() -> None:
    from notesearch.database import async_session_factory, engine

    settings = get_settings()
    worker = EmbeddingWorker(async_session_factory, build_embedding_service(settings), settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await worker.run_forever(stop_event)
    finally:
        await engine.dispose()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(_run())


if __name__ == "__main__":
    main()
