"""embeddings indexed_at watermark index

Revision ID: 0002_embeddings_indexed_at
Revises: 0001_init
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

from alembic import op


revision = "0002_embeddings_indexed_at"
down_revision = "0001_init"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Index sync pages through indexed rows by (indexed_at, id).
    op.create_index("ix_embeddings_indexed_at", "embeddings", ["index_status", "indexed_at", "id"])


def downgrade() -> None:
    op.drop_index("ix_embeddings_indexed_at", table_name="embeddings")
