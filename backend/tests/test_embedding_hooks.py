"""Tests for the note write-path hook that queues embedding jobs."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from notesearch.services.embedding_hooks import on_note_changed

QUEUE = "notesearch.services.embedding_hooks.EmbeddingRetryQueue"


def _make_session():
    session = MagicMock()
    savepoint = MagicMock()
    savepoint.__aenter__ = AsyncMock(return_value=None)
    savepoint.__aexit__ = AsyncMock(return_value=False)
    session.begin_nested = MagicMock(return_value=savepoint)
    return session, savepoint


@pytest.mark.asyncio
async def test_enqueues_in_savepoint():
    session, savepoint = _make_session()
    queue = MagicMock()
    queue.enqueue = AsyncMock(return_value="RETRY-1")

    with patch(QUEUE, return_value=queue) as queue_cls:
        item_id = await on_note_changed(session, "W-1", "update")

    assert item_id == "RETRY-1"
    queue_cls.assert_called_once_with(session)
    queue.enqueue.assert_awaited_once_with("W-1", "update")
    session.begin_nested.assert_called_once()
    savepoint.__aexit__.assert_awaited_once()


@pytest.mark.asyncio
async def test_queue_failure_does_not_propagate():
    session, savepoint = _make_session()
    queue = MagicMock()
    queue.enqueue = AsyncMock(side_effect=RuntimeError("queue table missing"))

    with patch(QUEUE, return_value=queue):
        item_id = await on_note_changed(session, "W-1", "create")

    assert item_id is None
    # The savepoint saw the exception, so only the enqueue is rolled back
    exc_type = savepoint.__aexit__.call_args.args[0]
    assert exc_type is RuntimeError
    session.rollback.assert_not_called()


@pytest.mark.asyncio
async def test_invalid_operation_is_swallowed():
    session, _ = _make_session()

    with patch(QUEUE) as queue_cls:
        queue_cls.return_value.enqueue = AsyncMock(side_effect=ValueError("'reindex' is not a valid EmbeddingOperation"))
        assert await on_note_changed(session, "W-1", "reindex") is None
