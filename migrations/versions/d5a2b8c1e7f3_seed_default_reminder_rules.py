"""seed default reminder rules

Revision ID: d5a2b8c1e7f3
Revises: c3d9f5e2a8b0
Create Date: 2026-10-06

Idempotent: rules are keyed by fixed ids and only inserted when missing.
Skipped when there is no user yet to own them; re-run
`python -m crm_reminders.application.reminder_scan --seed-defaults USER_ID`
after creating one.
"""
from alembic import op
import sqlalchemy as sa

from crm_reminders.domain.reminder_rule import DEFAULT_RULES

revision = "d5a2b8c1e7f3"
down_revision = "c3d9f5e2a8b0"
branch_labels = None
depends_on = None

reminder_rules = sa.table(
    "reminder_rules",
    sa.column("id", sa.String),
    sa.column("entity_type", sa.String),
    sa.column("trigger_type", sa.String),
    sa.column("days_before", sa.Integer),
    sa.column("days_after", sa.Integer),
    sa.column("priority", sa.String),
    sa.column("is_active", sa.Boolean),
    sa.column("title_template", sa.String),
    sa.column("message_template", sa.Text),
    sa.column("action_url_template", sa.String),
    sa.column("action_text_template", sa.String),
    sa.column("auto_create_task", sa.Boolean),
    sa.column("task_title_template", sa.String),
    sa.column("task_priority", sa.String),
    sa.column("created_by", sa.Integer),
)


def upgrade() -> None:
    conn = op.get_bind()
    owner_id = conn.execute(sa.text("SELECT id FROM users ORDER BY id LIMIT 1")).scalar()
    if owner_id is None:
        print("No user found, skipping default reminder rules")
        return

    existing = {row[0] for row in conn.execute(sa.text("SELECT id FROM reminder_rules"))}
    rows = [
        {"task_title_template": None, **values, "is_active": True, "created_by": owner_id}
        for values in DEFAULT_RULES
        if values["id"] not in existing
    ]
    if rows:
        op.bulk_insert(reminder_rules, rows)


def downgrade() -> None:
    ids = ", ".join(f"'{values['id']}'" for values in DEFAULT_RULES)
    op.execute(f"DELETE FROM reminder_rules WHERE id IN ({ids})")
