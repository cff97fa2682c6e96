"""order_documents: version column

Revision ID: 0002_order_documents_version
Revises: 0001_order_documents
Create Date: 2026-10-17 09:00:00.000000
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_order_documents_version"
down_revision: Union[str, Sequence[str], None] = "0001_order_documents"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Row version for merge writes: every UPDATE is conditioned on the version
    it read, so concurrent writers to the same order retry instead of
    overwriting each other.
    """
    with op.batch_alter_table("order_documents") as batch:
        batch.add_column(sa.Column("version", sa.Integer(), nullable=False, server_default="1"))


def downgrade() -> None:
    with op.batch_alter_table("order_documents") as batch:
        batch.drop_column("version")
