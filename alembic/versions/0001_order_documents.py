"""create order_documents

Revision ID: 0001_order_documents
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_order_documents"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    One row per buyback order:
    - data holds the whole document
    - status / last_status_update_at mirror the document for sweep queries
    """
    op.create_table(
        "order_documents",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("status", sa.String(length=64), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("last_status_update_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_order_documents_status", "order_documents", ["status"])
    op.create_index(
        "ix_order_documents_status_last_update",
        "order_documents",
        ["status", "last_status_update_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_order_documents_status_last_update", table_name="order_documents")
    op.drop_index("ix_order_documents_status", table_name="order_documents")
    op.drop_table("order_documents")
