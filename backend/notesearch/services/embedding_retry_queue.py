# @TEST tests/test_embedding_retry_queue.py

"""Persistent queue of embedding jobs with retry, backoff and dead-lettering.

Every state change is a single conditional UPDATE/DELETE on one row, so
several worker processes can share the table without extra locking:

    pending --claim--> retrying --complete--> [deleted]
                       retrying --failure, attempts left--> pending (backoff)
                       retrying --failure, budget spent--> dead_letter
    dead_letter --reset_to_pending--> pending

A note edited while its job is ``retrying`` does not get a second row:
enqueue flags the claimed row with ``requeue_requested`` and ``complete``
turns it back into a fresh pending job instead of deleting it, so the
edit is embedded by a later pass.

The queue never commits; callers own the transaction.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, exists, func, literal, select, text, update
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.ext.asyncio import AsyncSession

from notesearch.config import get_settings
from notesearch.constants import (
    LIVE_RETRY_STATUSES,
    RETRY_ID_PREFIX,
    RETRY_STATUS_TRANSITIONS,
    EmbeddingOperation,
    RetryStatus,
)
from notesearch.models import EmbeddingRetryItem, NoteEmbedding, WorkNote

logger = logging.getLogger(__name__)

# Must match the predicate of the uq_retry_queue_live_job partial index
_LIVE_JOB_PREDICATE = "status IN ('pending', 'retrying')"

_DEFAULT_DEAD_LETTER_MESSAGE = "Moved to dead letter"
_MANUAL_DEAD_LETTER_DETAILS = {"error_type": "ManualDeadLetter", "retryable": False}
_UNREPORTED_FAILURE_DETAILS = {"error_type": "Unknown"}


class NotFoundError(LookupError):
    """Raised when an operation targets a queue item id that does not exist."""


class InvalidTransitionError(ValueError):
    """Raised for a status the queue state machine cannot move an item into."""


class RetryQueueItem(BaseModel):
    """Snapshot of one queue row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    work_id: str
    operation_type: EmbeddingOperation
    attempt_count: int
    max_attempts: int
    status: RetryStatus
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    next_retry_at: datetime | None = None
    dead_letter_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeadLetterItem(RetryQueueItem):
    """Dead-lettered item with the title of the note it refers to."""

    work_title: str | None = None


class DeadLetterPage(BaseModel):
    items: list[DeadLetterItem]
    total: int


@dataclass(frozen=True)
class ClaimedItem:
    """A job leased to one worker until ``lease_expires_at``."""

    id: str
    work_id: str
    operation_type: EmbeddingOperation
    attempt_count: int
    max_attempts: int
    claim_token: str
    lease_expires_at: datetime


def generate_retry_id() -> str:
    """Return a new queue item id, e.g. ``RETRY-q3Jx0aZ1bC9dE2fG``."""
    return f"{RETRY_ID_PREFIX}{secrets.token_urlsafe(12)}"


def compute_backoff(attempt_count: int, base: float = 2.0, maximum: float = 3600.0) -> timedelta:
    """Delay before the next attempt: ``base ** attempt_count`` seconds, capped at *maximum*."""
    try:
        seconds = base ** max(attempt_count, 0)
    except OverflowError:
        seconds = maximum
    return timedelta(seconds=min(seconds, maximum))


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _coerce_status(status: RetryStatus | str) -> RetryStatus:
    try:
        return RetryStatus(status)
    except ValueError:
        raise InvalidTransitionError(f"Unknown queue status: {status!r}") from None


class EmbeddingRetryQueue:
    """Store operations over the ``embedding_retry_queue`` table.

    Args:
        session: An async SQLAlchemy session; the caller commits.
        max_attempts: Attempt budget for new items.
        backoff_base: Base of the exponential backoff, in seconds.
        backoff_max: Upper bound of a single backoff delay, in seconds.
        reset_attempts_on_retry: Whether an operator reset grants a fresh budget.
        lease_seconds: How long a claim stays exclusive to one worker.

    Unset arguments fall back to application settings.
    """

    def __init__(
        self,
        session: AsyncSession,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        reset_attempts_on_retry: bool | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._session = session
        self._max_attempts = max_attempts if max_attempts is not None else settings.EMBEDDING_MAX_ATTEMPTS
        self._backoff_base = backoff_base if backoff_base is not None else settings.EMBEDDING_BACKOFF_BASE_SECONDS
        self._backoff_max = backoff_max if backoff_max is not None else settings.EMBEDDING_BACKOFF_MAX_SECONDS
        self._reset_attempts = (
            reset_attempts_on_retry
            if reset_attempts_on_retry is not None
            else settings.EMBEDDING_RESET_ATTEMPTS_ON_RETRY
        )
        self._lease_seconds = lease_seconds if lease_seconds is not None else settings.WORKER_LEASE_SECONDS

        if self._max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, work_id: str, operation_type: EmbeddingOperation | str) -> str:
        """Queue an embedding job and return its id.

        Idempotent per ``(work_id, operation_type)``: while a live job
        exists, its id is returned and nothing is inserted. A pending job
        has not read the note yet and needs nothing more; a retrying job
        may already have, so it is flagged to run once more after it
        completes.
        """
        operation = EmbeddingOperation(operation_type)

        # Two rounds: the live row we collide with may finish in between
        for _ in range(2):
            now = _utcnow()
            stmt = (
                insert(EmbeddingRetryItem)
                .values(
                    id=generate_retry_id(),
                    work_id=work_id,
                    operation_type=operation.value,
                    attempt_count=0,
                    max_attempts=self._max_attempts,
                    status=RetryStatus.PENDING.value,
                    next_retry_at=now,
                )
                .on_conflict_do_nothing(
                    index_elements=[EmbeddingRetryItem.work_id, EmbeddingRetryItem.operation_type],
                    index_where=text(_LIVE_JOB_PREDICATE),
                )
                .returning(EmbeddingRetryItem.id)
            )
            result = await self._session.execute(stmt)
            inserted_id = result.scalar_one_or_none()
            if inserted_id is not None:
                logger.info("Enqueued %s embedding job %s for work note %s", operation, inserted_id, work_id)
                return inserted_id

            pending_id = await self._session.scalar(
                select(EmbeddingRetryItem.id).where(
                    EmbeddingRetryItem.work_id == work_id,
                    EmbeddingRetryItem.operation_type == operation.value,
                    EmbeddingRetryItem.status == RetryStatus.PENDING.value,
                )
            )
            if pending_id is not None:
                logger.debug("Embedding job for %s/%s already queued as %s", work_id, operation, pending_id)
                return pending_id

            result = await self._session.execute(
                update(EmbeddingRetryItem)
                .where(
                    EmbeddingRetryItem.work_id == work_id,
                    EmbeddingRetryItem.operation_type == operation.value,
                    EmbeddingRetryItem.status == RetryStatus.RETRYING.value,
                )
                .values(requeue_requested=True, updated_at=_utcnow())
                .returning(EmbeddingRetryItem.id)
            )
            in_flight_id = result.scalar_one_or_none()
            if in_flight_id is not None:
                logger.info(
                    "Embedding job %s for %s/%s is in flight; flagged to run again", in_flight_id, work_id, operation
                )
                return in_flight_id

        raise RuntimeError(f"Could not enqueue {operation} job for work note {work_id}")

    async def enqueue_all(
        self,
        operation_type: EmbeddingOperation | str = EmbeddingOperation.UPDATE,
        batch_size: int = 500,
        only_missing: bool = False,
    ) -> int:
        """Queue a job for every work note. Returns the number of new jobs.

        With *only_missing*, notes that already have vectors are skipped.
        """
        operation = EmbeddingOperation(operation_type)
        enqueued = 0
        last_work_id: str | None = None

        while True:
            stmt = select(WorkNote.work_id).order_by(WorkNote.work_id).limit(batch_size)
            if only_missing:
                stmt = stmt.where(~exists().where(NoteEmbedding.work_id == WorkNote.work_id))
            if last_work_id is not None:
                stmt = stmt.where(WorkNote.work_id > last_work_id)
            work_ids = list((await self._session.execute(stmt)).scalars().all())
            if not work_ids:
                break

            now = _utcnow()
            insert_stmt = (
                insert(EmbeddingRetryItem)
                .values(
                    [
                        {
                            "id": generate_retry_id(),
                            "work_id": work_id,
                            "operation_type": operation.value,
                            "attempt_count": 0,
                            "max_attempts": self._max_attempts,
                            "status": RetryStatus.PENDING.value,
                            "next_retry_at": now,
                        }
                        for work_id in work_ids
                    ]
                )
                .on_conflict_do_nothing(
                    index_elements=[EmbeddingRetryItem.work_id, EmbeddingRetryItem.operation_type],
                    index_where=text(_LIVE_JOB_PREDICATE),
                )
                .returning(EmbeddingRetryItem.id)
            )
            result = await self._session.execute(insert_stmt)
            enqueued += len(result.scalars().all())

            if len(work_ids) < batch_size:
                break
            last_work_id = work_ids[-1]

        logger.info("Bulk enqueue: %d %s jobs queued (only_missing=%s)", enqueued, operation, only_missing)
        return enqueued

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_by_id(self, item_id: str) -> RetryQueueItem | None:
        result = await self._session.execute(select(EmbeddingRetryItem).where(EmbeddingRetryItem.id == item_id))
        row = result.scalar_one_or_none()
        return RetryQueueItem.model_validate(row) if row is not None else None

    async def find_dead_letter_items(self, limit: int = 50, offset: int = 0) -> DeadLetterPage:
        """Page through dead-lettered items, newest first.

        Ordered by ``dead_letter_at DESC, id DESC`` so that, for an
        unchanged table, consecutive pages neither overlap nor skip rows.
        """
        total = await self._session.scalar(
            select(func.count())
            .select_from(EmbeddingRetryItem)
            .where(EmbeddingRetryItem.status == RetryStatus.DEAD_LETTER.value)
        )

        stmt = (
            select(EmbeddingRetryItem, WorkNote.title)
            .outerjoin(WorkNote, WorkNote.work_id == EmbeddingRetryItem.work_id)
            .where(EmbeddingRetryItem.status == RetryStatus.DEAD_LETTER.value)
            .order_by(EmbeddingRetryItem.dead_letter_at.desc(), EmbeddingRetryItem.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        items = [
            DeadLetterItem.model_validate(row).model_copy(update={"work_title": title})
            for row, title in result.all()
        ]
        return DeadLetterPage(items=items, total=total or 0)

    async def find_due_items(self, limit: int, now: datetime | None = None) -> list[RetryQueueItem]:
        """Live items whose ``next_retry_at`` has passed, oldest due first."""
        now = now or _utcnow()
        stmt = (
            select(EmbeddingRetryItem)
            .where(
                EmbeddingRetryItem.status.in_(LIVE_RETRY_STATUSES),
                EmbeddingRetryItem.next_retry_at <= now,
            )
            .order_by(EmbeddingRetryItem.next_retry_at, EmbeddingRetryItem.created_at, EmbeddingRetryItem.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [RetryQueueItem.model_validate(row) for row in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        result = await self._session.execute(
            select(EmbeddingRetryItem.status, func.count()).group_by(EmbeddingRetryItem.status)
        )
        counts = {status.value: 0 for status in RetryStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def reset_to_pending(self, item_id: str) -> bool:
        """Move a dead-lettered item back to ``pending``, due immediately.

        Returns False (and changes nothing) when the item is missing or
        not dead-lettered.
        """
        values: dict[str, Any] = {
            "status": RetryStatus.PENDING.value,
            "dead_letter_at": None,
            "next_retry_at": _utcnow(),
            "claim_token": None,
        }
        if self._reset_attempts:
            values["attempt_count"] = 0

        result = await self._session.execute(
            update(EmbeddingRetryItem)
            .where(
                EmbeddingRetryItem.id == item_id,
                EmbeddingRetryItem.status == RetryStatus.DEAD_LETTER.value,
            )
            .values(**values)
        )
        reset = bool(result.rowcount)
        if reset:
            logger.info("Embedding job %s reset to pending", item_id)
        return reset

    async def update_status(
        self,
        item_id: str,
        status: RetryStatus | str,
        expected_status: RetryStatus | str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Atomically move an item into *status*.

        The UPDATE only matches rows in a state the machine allows as a
        source for *status* (narrowed to *expected_status* when given), so
        two workers racing for the same pending item cannot both win.

        Returns:
            True if the row was updated, False if it exists but is in a
            state that may not move to *status*.

        Raises:
            NotFoundError: If no item has *item_id*.
            InvalidTransitionError: For an unknown status, or an
                *expected_status* that can never lead to *status*.
        """
        target = _coerce_status(status)
        allowed = RETRY_STATUS_TRANSITIONS[target]
        if expected_status is not None:
            expected = _coerce_status(expected_status)
            if expected not in allowed:
                raise InvalidTransitionError(f"Cannot move an item from {expected} to {target}")
            allowed = (expected,)

        now = _utcnow()
        values: dict[str, Any] = {"status": target.value, "updated_at": now}
        if target is RetryStatus.RETRYING:
            values["next_retry_at"] = now + timedelta(seconds=self._lease_seconds)
        elif target is RetryStatus.PENDING:
            values.update(next_retry_at=now, dead_letter_at=None, claim_token=None, requeue_requested=False)
        else:
            values.update(
                next_retry_at=None,
                dead_letter_at=now,
                claim_token=None,
                requeue_requested=False,
                error_message=func.coalesce(
                    error_message,
                    EmbeddingRetryItem.error_message,
                    _DEFAULT_DEAD_LETTER_MESSAGE,
                ),
                error_details=func.coalesce(
                    EmbeddingRetryItem.error_details,
                    literal(_MANUAL_DEAD_LETTER_DETAILS, JSONB),
                ),
            )

        result = await self._session.execute(
            update(EmbeddingRetryItem)
            .where(
                EmbeddingRetryItem.id == item_id,
                EmbeddingRetryItem.status.in_([s.value for s in allowed]),
            )
            .values(**values)
        )
        if result.rowcount:
            return True

        exists = await self._session.scalar(select(EmbeddingRetryItem.id).where(EmbeddingRetryItem.id == item_id))
        if exists is None:
            raise NotFoundError(f"Embedding retry item not found: {item_id}")
        return False

    async def delete(self, item_id: str) -> bool:
        result = await self._session.execute(delete(EmbeddingRetryItem).where(EmbeddingRetryItem.id == item_id))
        return bool(result.rowcount)

    async def purge_dead_letter(self, older_than: datetime | None = None) -> int:
        """Delete dead-lettered items, optionally only those dead-lettered before *older_than*."""
        stmt = delete(EmbeddingRetryItem).where(EmbeddingRetryItem.status == RetryStatus.DEAD_LETTER.value)
        if older_than is not None:
            stmt = stmt.where(EmbeddingRetryItem.dead_letter_at < older_than)
        result = await self._session.execute(stmt)
        purged = result.rowcount or 0
        logger.info("Purged %d dead-lettered embedding jobs", purged)
        return purged

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    async def claim(self, item_id: str, lease_seconds: float | None = None) -> ClaimedItem | None:
        """Lease a due item to the caller.

        Matches pending items and retrying items whose lease ran out, so a
        crashed worker's job is picked up again. Returns None if another
        worker got there first or the item is not due.
        """
        now = _utcnow()
        lease_expires_at = now + timedelta(seconds=lease_seconds if lease_seconds is not None else self._lease_seconds)
        token = secrets.token_hex(16)

        result = await self._session.execute(
            update(EmbeddingRetryItem)
            .where(
                EmbeddingRetryItem.id == item_id,
                EmbeddingRetryItem.status.in_(LIVE_RETRY_STATUSES),
                EmbeddingRetryItem.next_retry_at <= now,
            )
            .values(
                status=RetryStatus.RETRYING.value,
                claim_token=token,
                next_retry_at=lease_expires_at,
                requeue_requested=False,
                updated_at=now,
            )
            .returning(
                EmbeddingRetryItem.id,
                EmbeddingRetryItem.work_id,
                EmbeddingRetryItem.operation_type,
                EmbeddingRetryItem.attempt_count,
                EmbeddingRetryItem.max_attempts,
            )
        )
        row = result.one_or_none()
        if row is None:
            return None
        return ClaimedItem(
            id=row.id,
            work_id=row.work_id,
            operation_type=EmbeddingOperation(row.operation_type),
            attempt_count=row.attempt_count,
            max_attempts=row.max_attempts,
            claim_token=token,
            lease_expires_at=lease_expires_at,
        )

    async def complete(self, item_id: str, claim_token: str) -> bool:
        """Delete a finished job. False if the lease was lost to another worker.

        A job flagged by ``enqueue`` while it ran is not deleted but goes
        back to ``pending`` with a fresh attempt budget, due immediately.
        """
        owned = (
            EmbeddingRetryItem.id == item_id,
            EmbeddingRetryItem.claim_token == claim_token,
            EmbeddingRetryItem.status == RetryStatus.RETRYING.value,
        )
        result = await self._session.execute(
            delete(EmbeddingRetryItem).where(*owned, EmbeddingRetryItem.requeue_requested.is_(False))
        )
        if result.rowcount:
            return True

        now = _utcnow()
        result = await self._session.execute(
            update(EmbeddingRetryItem)
            .where(*owned, EmbeddingRetryItem.requeue_requested.is_(True))
            .values(
                status=RetryStatus.PENDING.value,
                attempt_count=0,
                next_retry_at=now,
                claim_token=None,
                requeue_requested=False,
                error_message=None,
                error_details=None,
                updated_at=now,
            )
        )
        if result.rowcount:
            logger.info("Embedding job %s finished but its note changed meanwhile; queued again", item_id)
            return True
        return False

    async def record_failure(
        self,
        item_id: str,
        claim_token: str,
        error_message: str,
        error_details: dict[str, Any] | None = None,
    ) -> RetryQueueItem | None:
        """Count a failed attempt and reschedule or dead-letter the job.

        Guarded by *claim_token* and the attempt count read beforehand, so a
        worker whose lease expired cannot count the same attempt twice.
        Returns the updated item, or None if the lease was lost.
        """
        result = await self._session.execute(
            select(EmbeddingRetryItem.attempt_count, EmbeddingRetryItem.max_attempts).where(
                EmbeddingRetryItem.id == item_id,
                EmbeddingRetryItem.claim_token == claim_token,
                EmbeddingRetryItem.status == RetryStatus.RETRYING.value,
            )
        )
        current = result.one_or_none()
        if current is None:
            logger.warning("Lost lease on embedding job %s; failure not recorded", item_id)
            return None

        now = _utcnow()
        attempts = min(current.attempt_count + 1, current.max_attempts)
        values: dict[str, Any] = {
            "attempt_count": attempts,
            "error_message": error_message or "Unknown error",
            "error_details": error_details or _UNREPORTED_FAILURE_DETAILS,
            "claim_token": None,
            "requeue_requested": False,
            "updated_at": now,
        }
        if attempts >= current.max_attempts:
            values.update(status=RetryStatus.DEAD_LETTER.value, dead_letter_at=now, next_retry_at=None)
        else:
            values.update(
                status=RetryStatus.PENDING.value,
                dead_letter_at=None,
                next_retry_at=now + compute_backoff(attempts, self._backoff_base, self._backoff_max),
            )

        result = await self._session.execute(
            update(EmbeddingRetryItem)
            .where(
                EmbeddingRetryItem.id == item_id,
                EmbeddingRetryItem.claim_token == claim_token,
                EmbeddingRetryItem.attempt_count == current.attempt_count,
            )
            .values(**values)
            .returning(EmbeddingRetryItem)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None

        if values["status"] == RetryStatus.DEAD_LETTER.value:
            logger.warning(
                "Embedding job %s dead-lettered after %d attempts: %s", item_id, attempts, values["error_message"]
            )
        else:
            logger.info(
                "Embedding job %s failed (attempt %d/%d), retry at %s",
                item_id,
                attempts,
                current.max_attempts,
                values["next_retry_at"],
            )
        return RetryQueueItem.model_validate(row)
