"""create reminder rules, notification ledger and notifications

Revision ID: b7e1c0a4d2f1
Revises:
Create Date: 2026-10-05
"""
from alembic import op
import sqlalchemy as sa

revision = "b7e1c0a4d2f1"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # -- Reminder rules --
    op.create_table(
        "reminder_rules",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("trigger_type", sa.String(16), nullable=False),
        sa.Column("days_before", sa.Integer(), server_default="7", nullable=False),
        sa.Column("days_after", sa.Integer(), server_default="1", nullable=False),
        sa.Column("priority", sa.String(16), server_default="medium", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("title_template", sa.String(255), nullable=False),
        sa.Column("message_template", sa.Text(), nullable=False),
        sa.Column("action_url_template", sa.String(255), nullable=False),
        sa.Column("action_text_template", sa.String(100), nullable=False),
        sa.Column("auto_create_task", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("task_title_template", sa.String(255), nullable=True),
        sa.Column("task_priority", sa.String(16), server_default="medium", nullable=False),
        sa.Column("fire_once", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("days_before >= 0", name="ck_reminder_rules_days_before"),
        sa.CheckConstraint("days_after >= 0", name="ck_reminder_rules_days_after"),
    )
    op.create_index("ix_reminder_rules_active_entity", "reminder_rules", ["is_active", "entity_type"])

    # -- Notification ledger --
    op.create_table(
        "reminder_notification_logs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column(
            "rule_id",
            sa.String(36),
            sa.ForeignKey("reminder_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("notification_type", sa.String(16), server_default="in_app", nullable=False),
        sa.Column("status", sa.String(16), server_default="sent", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_reminder_logs_dedup",
        "reminder_notification_logs",
        ["rule_id", "entity_type", "entity_id", "recipient_id"],
    )
    op.create_index("idx_reminder_logs_recipient", "reminder_notification_logs", ["recipient_id", "sent_at"])
    op.create_index("idx_reminder_logs_sent_at", "reminder_notification_logs", ["sent_at"])

    # -- In-app notifications --
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("priority", sa.String(16), server_default="medium", nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("action_url", sa.String(255), nullable=True),
        sa.Column("action_text", sa.String(100), nullable=True),
        sa.Column("entity_type", sa.String(16), nullable=True),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    # -- Web Push subscriptions --
    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.Text(), nullable=False),
        sa.Column("auth", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("endpoint"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_push_subscriptions_user_id", table_name="push_subscriptions")
    op.drop_table("push_subscriptions")

    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("idx_reminder_logs_sent_at", table_name="reminder_notification_logs")
    op.drop_index("idx_reminder_logs_recipient", table_name="reminder_notification_logs")
    op.drop_index("idx_reminder_logs_dedup", table_name="reminder_notification_logs")
    op.drop_table("reminder_notification_logs")

    op.drop_index("ix_reminder_rules_active_entity", table_name="reminder_rules")
    op.drop_table("reminder_rules")
