"""Document store table."""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("collection", sa.String(length=64), nullable=False),
        sa.Column("doc_key", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("body", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("collection", "doc_key", name="uq_documents_collection_key"),
    )
    op.create_index("ix_documents_collection_user", "documents", ["collection", "user_id"])


def downgrade() -> None:
    op.drop_index("ix_documents_collection_user", table_name="documents")
    op.drop_table("documents")
