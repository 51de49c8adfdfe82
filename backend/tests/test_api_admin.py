# @TEST tests/test_api_admin.py

"""Tests for the embedding queue admin endpoints (/api/admin/...).

EmbeddingRetryQueue is patched at the router module and get_db is
overridden, so only routing, validation and status codes are exercised.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from notesearch.database import get_db
from notesearch.search.vector_index import IndexCoverage
from notesearch.services.embedding_retry_queue import DeadLetterItem, DeadLetterPage, RetryQueueItem

QUEUE = "notesearch.api.admin.EmbeddingRetryQueue"
INDEX = "notesearch.api.admin.VectorIndex"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _item(status: str = "dead_letter") -> RetryQueueItem:
    return RetryQueueItem(
        id="RETRY-1",
        work_id="W-1",
        operation_type="update",
        attempt_count=3,
        max_attempts=3,
        status=status,
    )


def _dead_letter(i: int) -> DeadLetterItem:
    return DeadLetterItem(
        id=f"RETRY-{i}",
        work_id=f"W-{i}",
        operation_type="update",
        attempt_count=3,
        max_attempts=3,
        status="dead_letter",
        error_message="provider timeout",
        error_details={"error_type": "EmbeddingError", "retryable": True},
        dead_letter_at=datetime(2025, 3, 1, tzinfo=UTC) - timedelta(hours=i),
        work_title=f"Note {i}",
    )


def _make_queue(**methods) -> MagicMock:
    queue = MagicMock()
    for name, value in methods.items():
        setattr(queue, name, AsyncMock(return_value=value))
    return queue


@pytest.fixture
def app():
    from notesearch.main import app

    async def _override_get_db():
        yield AsyncMock()

    app.dependency_overrides[get_db] = _override_get_db
    yield app
    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture(scope="function")
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# 1. GET /admin/embedding-failures
# ---------------------------------------------------------------------------


class TestListFailures:
    @pytest.mark.asyncio
    async def test_returns_page_with_total(self, client):
        page = DeadLetterPage(items=[_dead_letter(1), _dead_letter(2)], total=5)
        queue = _make_queue(find_dead_letter_items=page)

        with patch(QUEUE, return_value=queue):
            resp = await client.get("/api/admin/embedding-failures", params={"limit": 2, "offset": 2})

        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 5
        assert [i["id"] for i in data["items"]] == ["RETRY-1", "RETRY-2"]
        assert data["items"][0]["work_title"] == "Note 1"
        assert data["items"][0]["error_details"]["error_type"] == "EmbeddingError"
        queue.find_dead_letter_items.assert_awaited_once_with(limit=2, offset=2)

    @pytest.mark.asyncio
    async def test_defaults(self, client):
        queue = _make_queue(find_dead_letter_items=DeadLetterPage(items=[], total=0))

        with patch(QUEUE, return_value=queue):
            resp = await client.get("/api/admin/embedding-failures")

        assert resp.status_code == 200
        queue.find_dead_letter_items.assert_awaited_once_with(limit=50, offset=0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 201}, {"offset": -1}])
    async def test_rejects_bad_paging(self, client, params):
        resp = await client.get("/api/admin/embedding-failures", params=params)
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# 2. POST /admin/embedding-failures/{id}/retry
# ---------------------------------------------------------------------------


class TestRetryFailure:
    @pytest.mark.asyncio
    async def test_resets_dead_letter(self, client):
        queue = _make_queue(find_by_id=_item(), reset_to_pending=True)

        with patch(QUEUE, return_value=queue):
            resp = await client.post("/api/admin/embedding-failures/RETRY-1/retry")

        assert resp.status_code == 200
        assert resp.json() == {"id": "RETRY-1", "status": "pending"}
        queue.reset_to_pending.assert_awaited_once_with("RETRY-1")

    @pytest.mark.asyncio
    async def test_unknown_item_returns_404(self, client):
        queue = _make_queue(find_by_id=None, reset_to_pending=False)

        with patch(QUEUE, return_value=queue):
            resp = await client.post("/api/admin/embedding-failures/RETRY-missing/retry")

        assert resp.status_code == 404
        queue.reset_to_pending.assert_not_called()

    @pytest.mark.asyncio
    async def test_live_item_returns_400(self, client):
        queue = _make_queue(find_by_id=_item("retrying"), reset_to_pending=False)

        with patch(QUEUE, return_value=queue):
            resp = await client.post("/api/admin/embedding-failures/RETRY-1/retry")

        assert resp.status_code == 400
        assert "retrying" in resp.json()["detail"]


# ---------------------------------------------------------------------------
# 3. DELETE /admin/embedding-failures
# ---------------------------------------------------------------------------


class TestPurgeFailures:
    @pytest.mark.asyncio
    async def test_purge_all(self, client):
        queue = _make_queue(purge_dead_letter=4)

        with patch(QUEUE, return_value=queue):
            resp = await client.delete("/api/admin/embedding-failures")

        assert resp.status_code == 200
        assert resp.json() == {"purged": 4}
        queue.purge_dead_letter.assert_awaited_once_with(None)

    @pytest.mark.asyncio
    async def test_purge_older_than(self, client):
        queue = _make_queue(purge_dead_letter=1)

        with patch(QUEUE, return_value=queue):
            resp = await client.delete("/api/admin/embedding-failures", params={"older_than_days": 7})

        assert resp.status_code == 200
        cutoff = queue.purge_dead_letter.call_args.args[0]
        expected = datetime.now(UTC) - timedelta(days=7)
        assert abs((cutoff - expected).total_seconds()) < 60


# ---------------------------------------------------------------------------
# 4. Queue stats and reindex
# ---------------------------------------------------------------------------


class TestQueueEndpoints:
    @pytest.mark.asyncio
    async def test_stats(self, client):
        queue = _make_queue(count_by_status={"pending": 3, "retrying": 1, "dead_letter": 2})

        with patch(QUEUE, return_value=queue):
            resp = await client.get("/api/admin/embedding-queue/stats")

        assert resp.status_code == 200
        assert resp.json() == {"counts": {"pending": 3, "retrying": 1, "dead_letter": 2}, "total": 6}

    @pytest.mark.asyncio
    async def test_reindex_defaults_to_update(self, client):
        queue = _make_queue(enqueue_all=12)

        with patch(QUEUE, return_value=queue):
            resp = await client.post("/api/admin/embeddings/reindex")

        assert resp.status_code == 200
        assert resp.json() == {"enqueued": 12, "operation_type": "update", "only_missing": False}
        queue.enqueue_all.assert_awaited_once_with("update", only_missing=False)

    @pytest.mark.asyncio
    async def test_reindex_only_missing(self, client):
        queue = _make_queue(enqueue_all=3)

        with patch(QUEUE, return_value=queue):
            resp = await client.post("/api/admin/embeddings/reindex", params={"only_missing": "true"})

        assert resp.status_code == 200
        assert resp.json()["only_missing"] is True
        queue.enqueue_all.assert_awaited_once_with("update", only_missing=True)

    @pytest.mark.asyncio
    async def test_embedding_coverage_stats(self, client):
        index = MagicMock()
        index.coverage = AsyncMock(return_value=IndexCoverage(total_notes=10, embedded_notes=7))

        with patch(INDEX, return_value=index):
            resp = await client.get("/api/admin/embeddings/stats")

        assert resp.status_code == 200
        assert resp.json() == {"total_notes": 10, "embedded_notes": 7, "pending_notes": 3}

    @pytest.mark.asyncio
    async def test_reindex_rejects_delete(self, client):
        queue = _make_queue(enqueue_all=0)

        with patch(QUEUE, return_value=queue):
            resp = await client.post("/api/admin/embeddings/reindex", params={"operation_type": "delete"})

        assert resp.status_code == 400
        queue.enqueue_all.assert_not_called()
