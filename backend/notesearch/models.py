# PostgreSQL schema: work notes, pgvector embeddings, embedding retry queue

from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR
from sqlalchemy.orm import Mapped, mapped_column

from notesearch.database import Base


class WorkNote(Base):
    """Work note owned by the record-management collaborator.

    The search core only reads these rows; ``search_vector`` is kept
    current by a database trigger (title weight A, content weight B).
    """

    __tablename__ = "work_notes"

    work_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), default="")
    content_raw: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Full-text search vector
    search_vector: Mapped[str | None] = mapped_column(TSVECTOR, nullable=True)

    __table_args__ = (
        Index("idx_work_notes_search_vector", "search_vector", postgresql_using="gin"),
        Index("idx_work_notes_category", "category"),
        Index("idx_work_notes_created_at", "created_at"),
    )


class Person(Base):
    """Person referenced by work notes (used for person/department filters)."""

    __tablename__ = "persons"

    person_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    current_dept: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)


class WorkNotePerson(Base):
    """Association between work notes and the persons involved."""

    __tablename__ = "work_note_person"

    id: Mapped[int] = mapped_column(primary_key=True)
    work_id: Mapped[str] = mapped_column(String(64), ForeignKey("work_notes.work_id", ondelete="CASCADE"))
    person_id: Mapped[str] = mapped_column(String(64), ForeignKey("persons.person_id", ondelete="CASCADE"))

    __table_args__ = (
        UniqueConstraint("work_id", "person_id", name="uq_work_note_person"),
        Index("idx_work_note_person_person", "person_id"),
    )


class NoteEmbedding(Base):
    """Vector embeddings for work note chunks (semantic search).

    One row per (work_id, chunk_index); rewriting a note replaces its rows.
    """

    __tablename__ = "note_embeddings"

    id: Mapped[int] = mapped_column(primary_key=True)
    work_id: Mapped[str] = mapped_column(String(64), ForeignKey("work_notes.work_id", ondelete="CASCADE"))
    chunk_index: Mapped[int] = mapped_column(Integer, default=0)
    chunk_text: Mapped[str] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    embedding: Mapped[list] = mapped_column(Vector(1536))  # OpenAI text-embedding-3-small
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("work_id", "chunk_index", name="uq_note_embeddings_chunk"),
        Index("idx_embeddings_work_id", "work_id"),
        Index("idx_embeddings_category", "category"),
    )


class EmbeddingRetryItem(Base):
    """Pending or failed embedding job for one work note.

    Rows are deleted once the worker succeeds. Dead-lettered rows stay
    until an operator resets or purges them.
    """

    __tablename__ = "embedding_retry_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # No foreign key: delete jobs must outlive the note they refer to
    work_id: Mapped[str] = mapped_column(String(64))
    operation_type: Mapped[str] = mapped_column(String(20))  # create | update | delete
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, server_default="3")
    status: Mapped[str] = mapped_column(String(20), default="pending", server_default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dead_letter_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    # Set when the note changed while a worker held the job
    requeue_requested: Mapped[bool] = mapped_column(Boolean, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("attempt_count <= max_attempts", name="ck_retry_attempts_within_budget"),
        CheckConstraint(
            "operation_type IN ('create', 'update', 'delete')",
            name="ck_retry_operation_type",
        ),
        CheckConstraint(
            "status IN ('pending', 'retrying', 'dead_letter')",
            name="ck_retry_status",
        ),
        Index("idx_retry_queue_next_retry", "status", "next_retry_at"),
        Index("idx_retry_queue_work_id", "work_id"),
        Index(
            "idx_retry_queue_dead_letter",
            "dead_letter_at",
            postgresql_where=text("status = 'dead_letter'"),
        ),
        # At most one live job per (work note, operation)
        Index(
            "uq_retry_queue_live_job",
            "work_id",
            "operation_type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'retrying')"),
        ),
    )
