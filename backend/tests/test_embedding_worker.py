# @TEST tests/test_embedding_worker.py

"""Tests for the embedding worker.

The queue and the vector index are patched at the worker module, so each
test drives one poll and inspects what the worker asked them to do.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from notesearch.constants import EmbeddingOperation
from notesearch.search.embeddings import EmbeddingError, PermanentEmbeddingError
from notesearch.services.embedding_retry_queue import ClaimedItem, RetryQueueItem
from notesearch.tasks.embedding_worker import EmbeddingWorker, WorkerRunResult

WORKER = "notesearch.tasks.embedding_worker"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings(**overrides):
    settings = MagicMock()
    settings.EMBEDDING_MAX_ATTEMPTS = 3
    settings.EMBEDDING_BACKOFF_BASE_SECONDS = 2.0
    settings.EMBEDDING_BACKOFF_MAX_SECONDS = 3600.0
    settings.WORKER_LEASE_SECONDS = 300.0
    settings.WORKER_BATCH_SIZE = 10
    settings.WORKER_POLL_INTERVAL_SECONDS = 0.01
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _due(item_id: str = "RETRY-1", operation: str = "update") -> RetryQueueItem:
    return RetryQueueItem(
        id=item_id,
        work_id="W-1",
        operation_type=operation,
        attempt_count=0,
        max_attempts=3,
        status="pending",
    )


def _claimed(item_id: str = "RETRY-1", operation: EmbeddingOperation = EmbeddingOperation.UPDATE, attempt: int = 0):
    return ClaimedItem(
        id=item_id,
        work_id="W-1",
        operation_type=operation,
        attempt_count=attempt,
        max_attempts=3,
        claim_token="tok",
        lease_expires_at=datetime.now(UTC) + timedelta(minutes=5),
    )


def _note_row(title: str = "Weekly sync", content: str | None = "Discussed budget", category: str | None = "meeting"):
    row = MagicMock()
    row.title = title
    row.content_raw = content
    row.category = category
    return row


def _make_session(note_row=None):
    session = AsyncMock()
    result = MagicMock()
    result.one_or_none.return_value = note_row
    session.execute = AsyncMock(return_value=result)
    return session


def _make_session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


def _make_queue(due=None, claimed=None, complete=True, failure=None):
    queue = MagicMock()
    queue.find_due_items = AsyncMock(return_value=due if due is not None else [_due()])
    queue.claim = AsyncMock(return_value=claimed)
    queue.complete = AsyncMock(return_value=complete)
    queue.record_failure = AsyncMock(return_value=failure)
    return queue


def _make_index():
    index = MagicMock()
    index.upsert = AsyncMock(return_value=1)
    index.delete = AsyncMock(return_value=2)
    return index


def _make_embedding_service(chunks=None, error: Exception | None = None):
    service = AsyncMock()
    if error is not None:
        service.embed_chunks = AsyncMock(side_effect=error)
    else:
        service.embed_chunks = AsyncMock(return_value=chunks or [("chunk", [0.1, 0.2])])
    return service


def _failed_item(status: str, attempts: int) -> RetryQueueItem:
    return RetryQueueItem(
        id="RETRY-1",
        work_id="W-1",
        operation_type="update",
        attempt_count=attempts,
        max_attempts=3,
        status=status,
    )


async def _run_once(queue, index, session, service):
    worker = EmbeddingWorker(_make_session_factory(session), service, _settings())
    with patch(f"{WORKER}.EmbeddingRetryQueue", return_value=queue), patch(
        f"{WORKER}.VectorIndex", return_value=index
    ):
        return await worker.run_once()


# ---------------------------------------------------------------------------
# 1. Successful jobs
# ---------------------------------------------------------------------------


class TestSuccessfulJobs:
    @pytest.mark.asyncio
    async def test_update_job_embeds_and_completes(self):
        queue = _make_queue(claimed=_claimed())
        index = _make_index()
        session = _make_session(_note_row())
        service = _make_embedding_service(chunks=[("Weekly sync\n\nDiscussed budget", [0.1, 0.2])])

        result = await _run_once(queue, index, session, service)

        assert result == WorkerRunResult(claimed=1, succeeded=1)
        service.embed_chunks.assert_awaited_once_with("Weekly sync\n\nDiscussed budget")
        index.upsert.assert_awaited_once_with(
            "W-1", [("Weekly sync\n\nDiscussed budget", [0.1, 0.2])], category="meeting"
        )
        queue.complete.assert_awaited_once_with("RETRY-1", "tok")
        queue.record_failure.assert_not_called()
        assert session.commit.await_count == 2  # claim, then vectors + job removal

    @pytest.mark.asyncio
    async def test_note_without_content_embeds_title(self):
        queue = _make_queue(claimed=_claimed())
        service = _make_embedding_service()

        await _run_once(queue, _make_index(), _make_session(_note_row(content=None)), service)

        service.embed_chunks.assert_awaited_once_with("Weekly sync")

    @pytest.mark.asyncio
    async def test_delete_job_removes_vectors(self):
        queue = _make_queue(due=[_due(operation="delete")], claimed=_claimed(operation=EmbeddingOperation.DELETE))
        index = _make_index()
        session = _make_session()
        service = _make_embedding_service()

        result = await _run_once(queue, index, session, service)

        assert result.succeeded == 1
        index.delete.assert_awaited_once_with("W-1")
        index.upsert.assert_not_called()
        service.embed_chunks.assert_not_called()
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_for_deleted_note_removes_vectors(self):
        queue = _make_queue(claimed=_claimed())
        index = _make_index()
        service = _make_embedding_service()

        result = await _run_once(queue, index, _make_session(note_row=None), service)

        assert result.succeeded == 1
        index.delete.assert_awaited_once_with("W-1")
        service.embed_chunks.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_lease_still_counts_as_success(self):
        queue = _make_queue(claimed=_claimed(), complete=False)

        result = await _run_once(queue, _make_index(), _make_session(_note_row()), _make_embedding_service())

        assert result.succeeded == 1


# ---------------------------------------------------------------------------
# 2. Claiming
# ---------------------------------------------------------------------------


class TestClaiming:
    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self):
        queue = _make_queue(claimed=None)
        service = _make_embedding_service()

        result = await _run_once(queue, _make_index(), _make_session(_note_row()), service)

        assert result == WorkerRunResult()
        service.embed_chunks.assert_not_called()
        queue.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_nothing_due(self):
        queue = _make_queue(due=[])

        result = await _run_once(queue, _make_index(), _make_session(), _make_embedding_service())

        assert result == WorkerRunResult()
        queue.claim.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_size_passed_to_queue(self):
        queue = _make_queue(due=[])

        await _run_once(queue, _make_index(), _make_session(), _make_embedding_service())

        queue.find_due_items.assert_awaited_once_with(10)


# ---------------------------------------------------------------------------
# 3. Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_error_is_recorded_for_retry(self):
        queue = _make_queue(claimed=_claimed(), failure=_failed_item("pending", 1))
        service = _make_embedding_service(error=EmbeddingError("rate limited"))

        result = await _run_once(queue, _make_index(), _make_session(_note_row()), service)

        assert result == WorkerRunResult(claimed=1, failed=1)
        queue.complete.assert_not_called()
        item_id, token, message, details = queue.record_failure.call_args.args
        assert (item_id, token, message) == ("RETRY-1", "tok", "rate limited")
        assert details == {"error_type": "EmbeddingError", "operation": "update", "attempt": 1, "retryable": True}

    @pytest.mark.asyncio
    async def test_final_failure_is_dead_lettered(self):
        queue = _make_queue(claimed=_claimed(attempt=2), failure=_failed_item("dead_letter", 3))
        service = _make_embedding_service(error=PermanentEmbeddingError("input too long"))

        result = await _run_once(queue, _make_index(), _make_session(_note_row()), service)

        assert result == WorkerRunResult(claimed=1, failed=1, dead_lettered=1)
        details = queue.record_failure.call_args.args[3]
        assert details["retryable"] is False
        assert details["attempt"] == 3

    @pytest.mark.asyncio
    async def test_index_error_is_a_failure(self):
        queue = _make_queue(claimed=_claimed(), failure=_failed_item("pending", 1))
        index = _make_index()
        index.upsert = AsyncMock(side_effect=RuntimeError("connection reset"))

        result = await _run_once(queue, index, _make_session(_note_row()), _make_embedding_service())

        assert result.failed == 1
        assert queue.record_failure.call_args.args[3]["error_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_failure_bookkeeping_error_does_not_stop_the_run(self):
        queue = _make_queue(due=[_due("RETRY-1"), _due("RETRY-2")], claimed=_claimed())
        queue.record_failure = AsyncMock(side_effect=RuntimeError("db down"))
        service = _make_embedding_service(error=EmbeddingError("timeout"))

        result = await _run_once(queue, _make_index(), _make_session(_note_row()), service)

        assert result == WorkerRunResult(claimed=2, failed=2)

    @pytest.mark.asyncio
    async def test_lost_lease_on_failure_is_not_dead_letter(self):
        queue = _make_queue(claimed=_claimed(), failure=None)
        service = _make_embedding_service(error=EmbeddingError("timeout"))

        result = await _run_once(queue, _make_index(), _make_session(_note_row()), service)

        assert result.dead_lettered == 0
        assert result.failed == 1


# ---------------------------------------------------------------------------
# 4. Polling loop
# ---------------------------------------------------------------------------


class TestRunForever:
    @pytest.mark.asyncio
    async def test_stops_when_event_is_set(self):
        worker = EmbeddingWorker(MagicMock(), AsyncMock(), _settings())
        stop = asyncio.Event()

        def _run_and_stop():
            stop.set()
            return WorkerRunResult()

        worker.run_once = AsyncMock(side_effect=_run_and_stop)

        await asyncio.wait_for(worker.run_forever(stop), timeout=1)

        worker.run_once.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_poll_errors_are_survived(self):
        worker = EmbeddingWorker(MagicMock(), AsyncMock(), _settings())
        stop = asyncio.Event()
        calls = []

        def _run():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            stop.set()
            return WorkerRunResult()

        worker.run_once = AsyncMock(side_effect=_run)

        await asyncio.wait_for(worker.run_forever(stop), timeout=1)

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_full_batch_polls_again_without_waiting(self):
        worker = EmbeddingWorker(MagicMock(), AsyncMock(), _settings(WORKER_BATCH_SIZE=1, WORKER_POLL_INTERVAL_SECONDS=60))
        stop = asyncio.Event()
        results = [WorkerRunResult(claimed=1, succeeded=1), WorkerRunResult(claimed=1, succeeded=1)]

        def _run():
            if len(results) == 1:
                stop.set()
            return results.pop(0)

        worker.run_once = AsyncMock(side_effect=_run)

        await asyncio.wait_for(worker.run_forever(stop), timeout=1)

        assert worker.run_once.await_count == 2
