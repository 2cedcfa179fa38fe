"""add generation lock leases"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0003_add_generation_locks"
down_revision = "0002_add_recurrence"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "generation_locks",
        sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("locked_at", sa.DateTime(), nullable=False),
        sa.Column("locked_by", sa.String(length=64), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("generation_locks")
