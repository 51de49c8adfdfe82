# @TEST tests/test_lexical.py
# @TEST tests/test_semantic.py
# @TEST tests/test_hybrid_search.py

"""Lexical, semantic, and hybrid search engines.

Lexical search: PostgreSQL tsvector + weighted ts_rank (title 3x, content 1x),
reported as a negated rank so lower is better.
Semantic search: query embedding + pgvector cosine similarity.
Hybrid search: both adapters run concurrently, each with its own session
and timeout; a failing adapter degrades to no candidates and the rest is
fused by ``notesearch.search.fusion``.
Uses 'simple' text search configuration for Korean/English support.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

from sqlalchemy import Select, and_, exists, func, literal_column, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notesearch.models import Person, WorkNote, WorkNotePerson
from notesearch.search.embeddings import EmbeddingError, EmbeddingService
from notesearch.search.filters import SearchFilters, normalize_filters
from notesearch.search.fusion import FusionPolicy, fuse
from notesearch.search.params import get_search_params
from notesearch.search.query_preprocessor import analyze_query
from notesearch.search.results import LexicalHit, SearchResult, SemanticHit
from notesearch.search.vector_index import VectorIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_LIMIT = 20


class RetrievalError(Exception):
    """Raised when a retrieval backend (database, embedding provider, vector index) fails.

    Distinct from "no results": adapters return ``[]`` for zero matches.
    """


def apply_note_filters(stmt: Select, filters: SearchFilters) -> Select:
    """AND the equality/range predicates of *filters* onto a WorkNote query.

    Person and department predicates use EXISTS so a note involving several
    matching persons is still returned once.
    """
    if filters.category is not None:
        stmt = stmt.where(WorkNote.category == filters.category)
    if filters.record_id is not None:
        stmt = stmt.where(WorkNote.work_id == filters.record_id)
    if filters.date_from is not None:
        stmt = stmt.where(WorkNote.created_at >= filters.date_from)
    if filters.date_to is not None:
        stmt = stmt.where(WorkNote.created_at <= filters.date_to)
    if filters.person_id is not None:
        stmt = stmt.where(
            exists().where(
                and_(
                    WorkNotePerson.work_id == WorkNote.work_id,
                    WorkNotePerson.person_id == filters.person_id,
                )
            )
        )
    if filters.department_name is not None:
        stmt = stmt.where(
            select(WorkNotePerson.id)
            .join(Person, Person.person_id == WorkNotePerson.person_id)
            .where(
                and_(
                    WorkNotePerson.work_id == WorkNote.work_id,
                    Person.current_dept == filters.department_name,
                )
            )
            .exists()
        )
    return stmt


class LexicalSearchEngine:
    """PostgreSQL tsvector-based full-text search over work notes.

    Query terms come from Korean morpheme analysis (kiwipiepy) and are
    OR-joined as prefix matches. Relevance is a weighted ts_rank (title
    weight 3x, content 1x with length normalization), reported negated
    so that lower rank means a better match.

    Args:
        session_factory: Factory producing a fresh AsyncSession per search.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def search_text(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> list[LexicalHit]:
        """Execute a full-text search against the work_notes table.

        Returns ``[]`` when nothing matches.

        Raises:
            RetrievalError: If the database query fails.
        """
        filters = filters or SearchFilters()
        limit = limit or filters.limit or _DEFAULT_LIMIT

        analysis = analyze_query(query)
        if not analysis.tsquery_expr:
            return []

        params = get_search_params()
        tsquery = func.to_tsquery(literal_column("'simple'"), analysis.tsquery_expr)

        title_rank = func.ts_rank(
            func.setweight(
                func.to_tsvector(literal_column("'simple'"), func.coalesce(WorkNote.title, "")),
                literal_column("'A'"),
            ),
            tsquery,
        )
        content_rank = func.ts_rank(
            func.setweight(
                func.to_tsvector(literal_column("'simple'"), func.coalesce(WorkNote.content_raw, "")),
                literal_column("'B'"),
            ),
            tsquery,
            1,  # normalization: divide by document length
        )
        # Negated so that, like bm25-style ranks, more negative is better
        rank = (-(params["title_weight"] * title_rank + params["content_weight"] * content_rank)).label("rank")

        stmt = (
            select(
                WorkNote.work_id,
                WorkNote.title,
                WorkNote.content_raw,
                WorkNote.category,
                WorkNote.created_at,
                WorkNote.updated_at,
                rank,
            )
            .where(WorkNote.search_vector.op("@@")(tsquery))
            .order_by(rank.asc(), WorkNote.created_at.desc(), WorkNote.work_id)
            .limit(limit)
        )
        stmt = apply_note_filters(stmt, filters)

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.fetchall()
        except (SQLAlchemyError, OSError) as exc:
            raise RetrievalError(f"Lexical search failed: {exc}") from exc

        return [
            LexicalHit(
                record_id=row.work_id,
                title=row.title or "",
                content=row.content_raw or "",
                category=row.category,
                created_at=row.created_at,
                updated_at=row.updated_at,
                rank=float(row.rank),
            )
            for row in rows
        ]


class SemanticSearchEngine:
    """pgvector-based semantic search engine using cosine similarity.

    Converts the query into a vector embedding via EmbeddingService, asks
    the vector index for the nearest notes (category filtered index-side),
    then loads those notes with the remaining filters applied.

    Args:
        session_factory: Factory producing a fresh AsyncSession per search.
        embedding_service: Service to convert text into vector embeddings.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        embedding_service: EmbeddingService,
    ) -> None:
        self._session_factory = session_factory
        self._embedding_service = embedding_service

    async def search_vector(
        self,
        query: str,
        filters: SearchFilters | None = None,
        top_k: int | None = None,
    ) -> list[SemanticHit]:
        """Return notes nearest to *query*, best first.

        Returns ``[]`` for blank queries or an empty index.

        Raises:
            RetrievalError: If the embedding provider or the vector index fails.
        """
        filters = filters or SearchFilters()
        top_k = top_k or filters.limit or _DEFAULT_LIMIT

        stripped = query.strip()
        if not stripped:
            return []

        analysis = analyze_query(stripped)
        try:
            query_embedding = await self._embedding_service.embed_text(analysis.normalized or stripped)
        except EmbeddingError as exc:
            raise RetrievalError(f"Query embedding failed: {exc}") from exc

        # Guard: empty embedding vector (e.g. empty input to service)
        if not query_embedding:
            return []

        min_similarity = float(get_search_params()["semantic_min_similarity"])

        try:
            async with self._session_factory() as session:
                matches = await VectorIndex(session).query(query_embedding, top_k, category=filters.category)
                matches = [m for m in matches if m.similarity >= min_similarity]
                if not matches:
                    return []
                notes = await self._fetch_notes(session, [m.work_id for m in matches], filters)
        except (SQLAlchemyError, OSError) as exc:
            raise RetrievalError(f"Vector search failed: {exc}") from exc

        hits: list[SemanticHit] = []
        for match in matches:
            note = notes.get(match.work_id)
            if note is None:
                # Filtered out, or the note was deleted before its vectors
                continue
            hits.append(
                SemanticHit(
                    record_id=match.work_id,
                    similarity=match.similarity,
                    title=note.title or "",
                    content=match.chunk_text,
                    category=note.category,
                    created_at=note.created_at,
                    updated_at=note.updated_at,
                )
            )
        return hits

    @staticmethod
    async def _fetch_notes(session: AsyncSession, work_ids: list[str], filters: SearchFilters) -> dict[str, Any]:
        """Load notes by id with person/department/record/date filters applied."""
        stmt = select(
            WorkNote.work_id,
            WorkNote.title,
            WorkNote.category,
            WorkNote.created_at,
            WorkNote.updated_at,
        ).where(WorkNote.work_id.in_(work_ids))
        stmt = apply_note_filters(stmt, filters)

        result = await session.execute(stmt)
        return {row.work_id: row for row in result.fetchall()}


class HybridSearchEngine:
    """Hybrid search combining lexical and semantic adapters.

    Both adapters run concurrently, each bounded by ``timeout`` seconds.
    Any adapter error or timeout is logged and treated as "no candidates",
    so ``search`` only ever raises ``InvalidFilterError`` for bad input.

    Args:
        lexical_engine: A LexicalSearchEngine instance.
        semantic_engine: A SemanticSearchEngine instance.
        policy: Fusion policy; read from search params on every call when None.
        timeout: Per-adapter timeout in seconds (None disables it).
        default_limit: Limit used when the filters do not set one.
        max_limit: Hard cap on ``limit``.
        candidate_multiplier: Each adapter fetches ``limit * multiplier`` candidates.
    """

    def __init__(
        self,
        lexical_engine: LexicalSearchEngine,
        semantic_engine: SemanticSearchEngine,
        policy: FusionPolicy | None = None,
        timeout: float | None = 5.0,
        default_limit: int = 20,
        max_limit: int = 100,
        candidate_multiplier: int = 2,
    ) -> None:
        self._lexical_engine = lexical_engine
        self._semantic_engine = semantic_engine
        self._policy = policy
        self._timeout = timeout
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._candidate_multiplier = max(1, candidate_multiplier)

    async def search(
        self,
        query: str,
        filters: SearchFilters | dict[str, Any] | None = None,
    ) -> list[SearchResult]:
        """Run both adapters and return fused results, best first.

        Raises:
            InvalidFilterError: If *filters* are malformed.
        """
        resolved = normalize_filters(filters, self._default_limit, self._max_limit)
        if not query or not query.strip():
            return []

        fetch_limit = resolved.limit * self._candidate_multiplier
        lexical_hits, semantic_hits = await asyncio.gather(
            self._safe_search(
                self._lexical_engine.search_text(query, resolved, limit=fetch_limit),
                label="Lexical",
                query=query,
            ),
            self._safe_search(
                self._semantic_engine.search_vector(query, resolved, top_k=fetch_limit),
                label="Semantic",
                query=query,
            ),
        )

        policy = self._policy or FusionPolicy.from_params(get_search_params())
        results = fuse(lexical_hits, semantic_hits, policy, limit=resolved.limit)
        logger.debug(
            "Hybrid search %r: %d lexical, %d semantic -> %d results",
            query,
            len(lexical_hits),
            len(semantic_hits),
            len(results),
        )
        return results

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _safe_search(self, call: Awaitable[list[T]], label: str, query: str) -> list[T]:
        """Await an adapter call, degrading failures and timeouts to ``[]``."""
        try:
            if self._timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=self._timeout)
        except TimeoutError:
            logger.warning("%s adapter timed out after %.1fs for query: %r", label, self._timeout, query)
        except Exception:
            logger.warning("%s adapter failed for query: %r", label, query, exc_info=True)
        return []


def build_hybrid_engine(
    session_factory: async_sessionmaker[AsyncSession],
    embedding_service: EmbeddingService,
    settings,
) -> HybridSearchEngine:
    """Wire a HybridSearchEngine from application settings."""
    return HybridSearchEngine(
        lexical_engine=LexicalSearchEngine(session_factory),
        semantic_engine=SemanticSearchEngine(session_factory, embedding_service),
        timeout=settings.SEARCH_ADAPTER_TIMEOUT_SECONDS,
        default_limit=settings.SEARCH_DEFAULT_LIMIT,
        max_limit=settings.SEARCH_MAX_LIMIT,
        candidate_multiplier=settings.SEARCH_CANDIDATE_MULTIPLIER,
    )
