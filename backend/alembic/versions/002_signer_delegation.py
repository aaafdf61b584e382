"""Add delegation columns to signatures

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0002"
down_revision: Union[str, None] = "0001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("signatures", sa.Column("delegated_from_email", sa.String(255), nullable=True))
    op.add_column("signatures", sa.Column("delegated_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("signatures", "delegated_at")
    op.drop_column("signatures", "delegated_from_email")
