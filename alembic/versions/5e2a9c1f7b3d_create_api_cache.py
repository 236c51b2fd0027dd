"""create api_cache

Revision ID: 5e2a9c1f7b3d
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "5e2a9c1f7b3d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JsonColumn = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "api_cache",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("cache_key", sa.Text(), nullable=False),
        sa.Column("data", JsonColumn, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", JsonColumn, nullable=True),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_api_cache_cache_key", "api_cache", ["cache_key"], unique=True)
    op.create_index("ix_api_cache_expires_at", "api_cache", ["expires_at"], unique=False)
    op.create_index("idx_api_cache_key_expiry", "api_cache", ["cache_key", "expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_api_cache_key_expiry", table_name="api_cache")
    op.drop_index("ix_api_cache_expires_at", table_name="api_cache")
    op.drop_index("ix_api_cache_cache_key", table_name="api_cache")
    op.drop_table("api_cache")
