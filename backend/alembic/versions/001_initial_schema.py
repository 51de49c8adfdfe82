"""Create work-note search schema: notes, persons, embeddings, retry queue.

Revision ID: 001_initial_schema
Revises: None
Create Date: 2026-10-16 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Apply schema migrations."""
    # Enable pgvector extension for embeddings
    op.execute('CREATE EXTENSION IF NOT EXISTS "vector"')

    # Create work_notes table
    op.create_table(
        "work_notes",
        sa.Column("work_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(500), nullable=False, server_default=""),
        sa.Column("content_raw", sa.Text, nullable=False, server_default=""),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("search_vector", postgresql.TSVECTOR(), nullable=True),
        sa.PrimaryKeyConstraint("work_id"),
    )
    op.create_index(
        "idx_work_notes_search_vector",
        "work_notes",
        ["search_vector"],
        unique=False,
        postgresql_using="gin",
    )
    op.create_index("idx_work_notes_category", "work_notes", ["category"], unique=False)
    op.create_index("idx_work_notes_created_at", "work_notes", ["created_at"], unique=False)

    # Create persons + association tables
    op.create_table(
        "persons",
        sa.Column("person_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("current_dept", sa.String(255), nullable=True),
        sa.PrimaryKeyConstraint("person_id"),
    )
    op.create_index("ix_persons_current_dept", "persons", ["current_dept"], unique=False)

    op.create_table(
        "work_note_person",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("work_id", sa.String(64), nullable=False),
        sa.Column("person_id", sa.String(64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["work_id"], ["work_notes.work_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["person_id"], ["persons.person_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("work_id", "person_id", name="uq_work_note_person"),
    )
    op.create_index("idx_work_note_person_person", "work_note_person", ["person_id"], unique=False)

    # Create note_embeddings table
    op.create_table(
        "note_embeddings",
        sa.Column("id", sa.Integer, nullable=False),
        sa.Column("work_id", sa.String(64), nullable=False),
        sa.Column("chunk_index", sa.Integer, nullable=False, server_default="0"),
        sa.Column("chunk_text", sa.Text, nullable=False),
        sa.Column("category", sa.String(100), nullable=True),
        sa.Column("embedding", Vector(1536), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["work_id"], ["work_notes.work_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("work_id", "chunk_index", name="uq_note_embeddings_chunk"),
    )
    op.create_index("idx_embeddings_work_id", "note_embeddings", ["work_id"], unique=False)
    op.create_index("idx_embeddings_category", "note_embeddings", ["category"], unique=False)
    # HNSW cosine index for nearest-neighbour search
    op.execute(
        "CREATE INDEX idx_embeddings_vector ON note_embeddings "
        "USING hnsw (embedding vector_cosine_ops)"
    )

    # Create embedding_retry_queue table
    op.create_table(
        "embedding_retry_queue",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("work_id", sa.String(64), nullable=False),
        sa.Column("operation_type", sa.String(20), nullable=False),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_details", postgresql.JSONB(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dead_letter_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_token", sa.String(64), nullable=True),
        sa.Column("requeue_requested", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("attempt_count <= max_attempts", name="ck_retry_attempts_within_budget"),
        sa.CheckConstraint("operation_type IN ('create', 'update', 'delete')", name="ck_retry_operation_type"),
        sa.CheckConstraint("status IN ('pending', 'retrying', 'dead_letter')", name="ck_retry_status"),
    )
    op.create_index(
        "idx_retry_queue_next_retry", "embedding_retry_queue", ["status", "next_retry_at"], unique=False
    )
    op.create_index("idx_retry_queue_work_id", "embedding_retry_queue", ["work_id"], unique=False)
    op.create_index(
        "idx_retry_queue_dead_letter",
        "embedding_retry_queue",
        ["dead_letter_at"],
        unique=False,
        postgresql_where=sa.text("status = 'dead_letter'"),
    )
    op.create_index(
        "uq_retry_queue_live_job",
        "embedding_retry_queue",
        ["work_id", "operation_type"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'retrying')"),
    )

    # Create trigger function to automatically update search_vector on work_notes
    op.execute(
        """
        CREATE OR REPLACE FUNCTION update_work_note_search_vector()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.search_vector :=
                setweight(to_tsvector('simple', coalesce(NEW.title, '')), 'A') ||
                setweight(to_tsvector('simple', coalesce(NEW.content_raw, '')), 'B');
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """
    )
    op.execute(
        """
        CREATE TRIGGER trigger_update_work_note_search_vector
            BEFORE INSERT OR UPDATE OF title, content_raw ON work_notes
            FOR EACH ROW
            EXECUTE FUNCTION update_work_note_search_vector();
    """
    )


def downgrade() -> None:
    """Revert schema migrations."""
    op.execute("DROP TRIGGER IF EXISTS trigger_update_work_note_search_vector ON work_notes")
    op.execute("DROP FUNCTION IF EXISTS update_work_note_search_vector()")

    op.drop_index("uq_retry_queue_live_job", table_name="embedding_retry_queue")
    op.drop_index("idx_retry_queue_dead_letter", table_name="embedding_retry_queue")
    op.drop_index("idx_retry_queue_work_id", table_name="embedding_retry_queue")
    op.drop_index("idx_retry_queue_next_retry", table_name="embedding_retry_queue")
    op.drop_table("embedding_retry_queue")

    op.drop_index("idx_embeddings_vector", table_name="note_embeddings")
    op.drop_index("idx_embeddings_category", table_name="note_embeddings")
    op.drop_index("idx_embeddings_work_id", table_name="note_embeddings")
    op.drop_table("note_embeddings")

    op.drop_index("idx_work_note_person_person", table_name="work_note_person")
    op.drop_table("work_note_person")
    op.drop_index("ix_persons_current_dept", table_name="persons")
    op.drop_table("persons")

    op.drop_index("idx_work_notes_created_at", table_name="work_notes")
    op.drop_index("idx_work_notes_category", table_name="work_notes")
    op.drop_index("idx_work_notes_search_vector", table_name="work_notes")
    op.drop_table("work_notes")

    op.execute('DROP EXTENSION IF EXISTS "vector"')
