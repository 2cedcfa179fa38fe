"""add recurrence rule and instance link"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_add_recurrence"
down_revision = "0001_create_tasks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("tasks") as batch:
        batch.add_column(sa.Column("recurring_parent_id", sa.Integer(), nullable=True))
        batch.add_column(
            sa.Column("recurrence_type", sa.String(length=20), nullable=False, server_default="none")
        )
        batch.add_column(
            sa.Column("recurrence_interval", sa.Integer(), nullable=False, server_default="1")
        )
        batch.add_column(sa.Column("recurrence_end_date", sa.Date(), nullable=True))
        batch.add_column(sa.Column("recurrence_weekday", sa.Integer(), nullable=True))
        batch.add_column(sa.Column("recurrence_month_day", sa.Integer(), nullable=True))
        batch.add_column(sa.Column("recurrence_week_of_month", sa.Integer(), nullable=True))
        batch.add_column(
            sa.Column("completion_based", sa.Boolean(), nullable=False, server_default=sa.text("false"))
        )
        batch.add_column(sa.Column("last_generated_date", sa.Date(), nullable=True))
        batch.create_foreign_key(
            "fk_tasks_recurring_parent_id",
            "tasks",
            ["recurring_parent_id"],
            ["id"],
            ondelete="SET NULL",
        )
    op.create_index("ix_tasks_recurring_parent_id", "tasks", ["recurring_parent_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_tasks_recurring_parent_id", table_name="tasks")
    with op.batch_alter_table("tasks") as batch:
        batch.drop_constraint("fk_tasks_recurring_parent_id", type_="foreignkey")
        batch.drop_column("last_generated_date")
        batch.drop_column("completion_based")
        batch.drop_column("recurrence_week_of_month")
        batch.drop_column("recurrence_month_day")
        batch.drop_column("recurrence_weekday")
        batch.drop_column("recurrence_end_date")
        batch.drop_column("recurrence_interval")
        batch.drop_column("recurrence_type")
        batch.drop_column("recurring_parent_id")
