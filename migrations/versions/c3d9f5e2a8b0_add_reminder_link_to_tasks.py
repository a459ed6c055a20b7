"""add reminder follow-up link columns to tasks

Revision ID: c3d9f5e2a8b0
Revises: b7e1c0a4d2f1
Create Date: 2026-10-05
"""
from alembic import op
import sqlalchemy as sa

revision = "c3d9f5e2a8b0"
down_revision = "b7e1c0a4d2f1"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tasks", sa.Column("linked_entity_type", sa.String(16), nullable=True))
    op.add_column("tasks", sa.Column("linked_entity_id", sa.Integer(), nullable=True))
    op.add_column("tasks", sa.Column("reminder_rule_id", sa.String(36), nullable=True))
    op.create_index("ix_tasks_linked_entity", "tasks", ["linked_entity_type", "linked_entity_id"])


def downgrade() -> None:
    op.drop_index("ix_tasks_linked_entity", table_name="tasks")
    op.drop_column("tasks", "reminder_rule_id")
    op.drop_column("tasks", "linked_entity_id")
    op.drop_column("tasks", "linked_entity_type")
