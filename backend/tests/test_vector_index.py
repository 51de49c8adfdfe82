"""Tests for the pgvector-backed vector index (replace-by-key writes)."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from notesearch.search.vector_index import IndexCoverage, VectorIndex, VectorMatch


def _make_mock_session(rows: list | None = None, rowcount: int = 0):
    session = AsyncMock()
    result = MagicMock()
    result.fetchall.return_value = rows or []
    result.rowcount = rowcount
    session.execute = AsyncMock(return_value=result)
    return session


def _params(stmt) -> dict:
    return stmt.compile(dialect=postgresql.dialect()).params


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestUpsert:
    @pytest.mark.asyncio
    async def test_upsert_is_insert_on_conflict_then_trim(self):
        session = _make_mock_session()
        index = VectorIndex(session)

        written = await index.upsert("W-1", [("chunk a", [0.1] * 3), ("chunk b", [0.2] * 3)], category="meeting")

        assert written == 2
        assert session.execute.await_count == 2
        upsert_sql = _sql(session.execute.call_args_list[0].args[0])
        assert "INSERT INTO note_embeddings" in upsert_sql
        assert "ON CONFLICT (work_id, chunk_index) DO UPDATE" in upsert_sql
        trim_stmt = session.execute.call_args_list[1].args[0]
        trim_sql = _sql(trim_stmt)
        assert "DELETE FROM note_embeddings" in trim_sql
        assert "note_embeddings.chunk_index >= " in trim_sql
        assert 2 in _params(trim_stmt).values()

    @pytest.mark.asyncio
    async def test_repeating_upsert_issues_identical_statements(self):
        """A retried upsert writes the same keys, so no duplicate vectors appear."""
        session = _make_mock_session()
        index = VectorIndex(session)
        chunks = [("chunk a", [0.1] * 3)]

        await index.upsert("W-1", chunks)
        await index.upsert("W-1", chunks)

        first, second = session.execute.call_args_list[0], session.execute.call_args_list[2]
        assert _params(first.args[0]) == _params(second.args[0])

    @pytest.mark.asyncio
    async def test_upsert_of_no_chunks_only_deletes(self):
        session = _make_mock_session()
        index = VectorIndex(session)

        assert await index.upsert("W-1", []) == 0
        assert session.execute.await_count == 1
        assert "DELETE FROM note_embeddings" in _sql(session.execute.call_args.args[0])


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_returns_rowcount(self):
        session = _make_mock_session(rowcount=3)
        assert await VectorIndex(session).delete("W-1") == 3

    @pytest.mark.asyncio
    async def test_delete_of_unknown_note_is_not_an_error(self):
        session = _make_mock_session(rowcount=0)
        assert await VectorIndex(session).delete("missing") == 0


class TestQuery:
    @pytest.mark.asyncio
    async def test_query_maps_distance_to_similarity(self):
        row = MagicMock()
        row.work_id = "W-1"
        row.chunk_text = "chunk"
        row.cosine_distance = 0.25
        session = _make_mock_session(rows=[row])

        matches = await VectorIndex(session).query([0.1] * 3, top_k=5)

        assert matches == [VectorMatch(work_id="W-1", chunk_text="chunk", similarity=0.75)]
        sql = _sql(session.execute.call_args.args[0])
        assert "DISTINCT ON (note_embeddings.work_id)" in sql
        assert "LIMIT" in sql

    @pytest.mark.asyncio
    async def test_empty_embedding_or_zero_top_k(self):
        session = _make_mock_session()
        index = VectorIndex(session)

        assert await index.query([], top_k=5) == []
        assert await index.query([0.1], top_k=0) == []
        session.execute.assert_not_called()


class TestCoverage:
    @pytest.mark.asyncio
    async def test_counts_notes_with_vectors(self):
        session = AsyncMock()
        session.scalar = AsyncMock(side_effect=[10, 7])

        coverage = await VectorIndex(session).coverage()

        assert coverage == IndexCoverage(total_notes=10, embedded_notes=7)
        assert coverage.pending_notes == 3
        embedded_sql = _sql(session.scalar.call_args_list[1].args[0])
        assert "count(DISTINCT note_embeddings.work_id)" in embedded_sql

    @pytest.mark.asyncio
    async def test_empty_tables(self):
        session = AsyncMock()
        session.scalar = AsyncMock(side_effect=[None, None])

        coverage = await VectorIndex(session).coverage()

        assert coverage.total_notes == 0
        assert coverage.pending_notes == 0

    def test_pending_never_negative(self):
        assert IndexCoverage(total_notes=2, embedded_notes=5).pending_notes == 0
