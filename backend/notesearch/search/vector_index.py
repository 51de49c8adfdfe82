"""pgvector-backed vector index for work-note chunks.

Writes are replace-by-key: ``upsert`` rewrites every chunk of a note in
place (``ON CONFLICT (work_id, chunk_index) DO UPDATE``) and drops chunks
beyond the new chunk count, so repeating the same upsert after a partial
failure never leaves duplicate vectors behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from notesearch.models import NoteEmbedding, WorkNote

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VectorMatch:
    """Best-matching chunk of one note."""

    work_id: str
    chunk_text: str
    similarity: float


@dataclass(frozen=True)
class IndexCoverage:
    """How many work notes have at least one vector."""

    total_notes: int
    embedded_notes: int

    @property
    def pending_notes(self) -> int:
        return max(self.total_notes - self.embedded_notes, 0)


class VectorIndex:
    """Query and maintain the ``note_embeddings`` table.

    Args:
        session: An async SQLAlchemy session for database operations.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(
        self,
        work_id: str,
        chunks: list[tuple[str, list[float]]],
        category: str | None = None,
    ) -> int:
        """Replace all vectors of *work_id* with *chunks*.

        Args:
            work_id: Work note the chunks belong to.
            chunks: ``(chunk_text, embedding)`` tuples in chunk order.
            category: Note category, stored for index-side filtering.

        Returns:
            Number of chunk rows written.
        """
        if chunks:
            rows = [
                {
                    "work_id": work_id,
                    "chunk_index": index,
                    "chunk_text": chunk_text,
                    "embedding": embedding,
                    "category": category,
                }
                for index, (chunk_text, embedding) in enumerate(chunks)
            ]
            stmt = insert(NoteEmbedding).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=[NoteEmbedding.work_id, NoteEmbedding.chunk_index],
                set_={
                    "chunk_text": stmt.excluded.chunk_text,
                    "embedding": stmt.excluded.embedding,
                    "category": stmt.excluded.category,
                },
            )
            await self._session.execute(stmt)

        # Drop chunks left over from a longer previous version
        await self._session.execute(
            delete(NoteEmbedding).where(
                NoteEmbedding.work_id == work_id,
                NoteEmbedding.chunk_index >= len(chunks),
            )
        )
        logger.debug("Upserted %d vectors for work note %s", len(chunks), work_id)
        return len(chunks)

    async def delete(self, work_id: str) -> int:
        """Delete every vector of *work_id*. Deleting nothing is not an error."""
        result = await self._session.execute(delete(NoteEmbedding).where(NoteEmbedding.work_id == work_id))
        return result.rowcount or 0

    async def coverage(self) -> IndexCoverage:
        total = await self._session.scalar(select(func.count()).select_from(WorkNote))
        embedded = await self._session.scalar(select(func.count(NoteEmbedding.work_id.distinct())))
        return IndexCoverage(total_notes=total or 0, embedded_notes=embedded or 0)

    async def query(
        self,
        embedding: list[float],
        top_k: int,
        category: str | None = None,
    ) -> list[VectorMatch]:
        """Return up to *top_k* notes nearest to *embedding*.

        Uses DISTINCT ON (work_id) so each note appears at most once,
        keeping only its best-matching chunk. Similarity is
        ``1 - cosine_distance`` clamped into [0, 1].
        """
        if not embedding or top_k <= 0:
            return []

        cosine_distance = NoteEmbedding.embedding.cosine_distance(embedding)

        inner = (
            select(
                NoteEmbedding.work_id,
                NoteEmbedding.chunk_text,
                cosine_distance.label("cosine_distance"),
            )
            .distinct(NoteEmbedding.work_id)
            .order_by(NoteEmbedding.work_id, cosine_distance.asc())
        )
        if category is not None:
            inner = inner.where(NoteEmbedding.category == category)

        best_chunks = inner.subquery("best_chunks")
        stmt = (
            select(best_chunks.c.work_id, best_chunks.c.chunk_text, best_chunks.c.cosine_distance)
            .order_by(best_chunks.c.cosine_distance.asc(), best_chunks.c.work_id)
            .limit(top_k)
        )

        result = await self._session.execute(stmt)
        rows = result.fetchall()
        return [
            VectorMatch(
                work_id=row.work_id,
                chunk_text=row.chunk_text,
                similarity=min(1.0, max(0.0, round(1.0 - float(row.cosine_distance), 10))),
            )
            for row in rows
        ]
