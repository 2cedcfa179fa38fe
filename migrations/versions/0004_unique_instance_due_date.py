"""one instance per template and due date"""
from __future__ import annotations

from alembic import op

revision = "0004_unique_instance_due_date"
down_revision = "0003_add_generation_locks"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("tasks") as batch:
        batch.create_unique_constraint(
            "uq_tasks_recurring_parent_due", ["recurring_parent_id", "due_date"]
        )


def downgrade() -> None:
    with op.batch_alter_table("tasks") as batch:
        batch.drop_constraint("uq_tasks_recurring_parent_due", type_="unique")
