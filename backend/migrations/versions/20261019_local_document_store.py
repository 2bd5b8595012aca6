"""Local document store and sync bookkeeping

Revision ID: 20261019_local_docs
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_local_docs"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "local_documents",
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("doc_id", sa.String(length=128), nullable=False),
        sa.Column("rev", sa.String(length=64), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("body", sa.JSON(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("synced_rev", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("entity_type", "doc_id"),
    )
    op.create_index("ix_local_documents_seq", "local_documents", ["seq"])
    op.create_index("ix_local_documents_type_seq", "local_documents", ["entity_type", "seq"])
    op.create_index("ix_local_documents_type_deleted", "local_documents", ["entity_type", "is_deleted"])
    op.create_index("ix_local_documents_type_updated", "local_documents", ["entity_type", "updated_at"])

    op.create_table(
        "document_conflicts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("doc_id", sa.String(length=128), nullable=False),
        sa.Column("rev", sa.String(length=64), nullable=False),
        sa.Column("body", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "doc_id", "rev", name="uq_document_conflicts_rev"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_document_conflicts_doc", "document_conflicts", ["entity_type", "doc_id"])

    op.create_table(
        "update_sequences",
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("entity_type"),
    )

    op.create_table(
        "sync_checkpoints",
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("pushed_seq", sa.Integer(), nullable=False),
        sa.Column("pulled_since", sa.String(length=64), nullable=True),
        sa.Column("last_push_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_pull_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("entity_type"),
    )

    op.create_table(
        "sync_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("doc_id", sa.String(length=128), nullable=True),
        sa.Column("direction", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("rev", sa.String(length=64), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_sync_events_entity_type", "sync_events", ["entity_type"])
    op.create_index("ix_sync_events_status", "sync_events", ["status"])
    op.create_index("ix_sync_events_created_at", "sync_events", ["created_at"])
    op.create_index("ix_sync_events_entity_doc", "sync_events", ["entity_type", "doc_id"])


def downgrade():
    op.drop_index("ix_sync_events_entity_doc", table_name="sync_events")
    op.drop_index("ix_sync_events_created_at", table_name="sync_events")
    op.drop_index("ix_sync_events_status", table_name="sync_events")
    op.drop_index("ix_sync_events_entity_type", table_name="sync_events")
    op.drop_table("sync_events")
    op.drop_table("sync_checkpoints")
    op.drop_table("update_sequences")
    op.drop_index("ix_document_conflicts_doc", table_name="document_conflicts")
    op.drop_table("document_conflicts")
    op.drop_index("ix_local_documents_type_updated", table_name="local_documents")
    op.drop_index("ix_local_documents_type_deleted", table_name="local_documents")
    op.drop_index("ix_local_documents_type_seq", table_name="local_documents")
    op.drop_index("ix_local_documents_seq", table_name="local_documents")
    op.drop_table("local_documents")
