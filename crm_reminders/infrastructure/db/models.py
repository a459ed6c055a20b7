"""
SQLAlchemy ORM models (reminder tables + CRM read models)
"""
import uuid
from decimal import Decimal
from datetime import date as date_type, datetime
from sqlalchemy import String, Integer, Text, TIMESTAMP, Date, func, Boolean, Numeric, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from crm_reminders.infrastructure.db.session import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# CRM tables (owned by the CRM; the reminder engine reads them)
# ---------------------------------------------------------------------------

class User(Base):
    """
    User model (existing)
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, server_default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, server_default="")
    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true", default=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class MedicalInstitution(Base):
    """Institution (existing). Only the name is used in reminder texts"""
    __tablename__ = "medical_institutions"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class TaskModel(Base):
    """CRM task (existing). Follow-up tasks are inserted by the reminder engine."""
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, server_default="todo")  # todo/in_progress/completed/cancelled
    priority: Mapped[str] = mapped_column(String(16), nullable=False, server_default="medium")
    due_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)

    assignee_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    creator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    institution_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Set on follow-up tasks created by a reminder rule
    linked_entity_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    linked_entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reminder_rule_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


class QuoteModel(Base):
    """CRM quote (existing)"""
    __tablename__ = "quotes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    quote_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, server_default="draft")  # draft/sent/accepted/rejected/expired/cancelled/ordered
    valid_until: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, server_default="0")

    assigned_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    institution_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class InvoiceModel(Base):
    """CRM invoice (existing)"""
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, server_default="draft")  # draft/sent/partially_paid/paid/overdue/cancelled
    due_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, server_default="0")

    assigned_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    institution_id: Mapped[int | None] = mapped_column(Integer, nullable=True)


class PushSubscription(Base):
    """Web Push subscription for a user device."""
    __tablename__ = "push_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    p256dh: Mapped[str] = mapped_column(Text, nullable=False)
    auth: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )


# ---------------------------------------------------------------------------
# Reminder engine tables
# ---------------------------------------------------------------------------

class ReminderRuleModel(Base):
    """Configured reminder rule: which entities to watch, when to fire, what to say."""
    __tablename__ = "reminder_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)   # task/quote/invoice
    trigger_type: Mapped[str] = mapped_column(String(16), nullable=False)  # due_soon/overdue/expired/unpaid
    days_before: Mapped[int] = mapped_column(Integer, nullable=False, server_default="7", default=7)
    days_after: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1", default=1)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, server_default="medium", default="medium")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true", default=True)

    title_template: Mapped[str] = mapped_column(String(255), nullable=False)
    message_template: Mapped[str] = mapped_column(Text, nullable=False)
    action_url_template: Mapped[str] = mapped_column(String(255), nullable=False)
    action_text_template: Mapped[str] = mapped_column(String(100), nullable=False)

    auto_create_task: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    task_title_template: Mapped[str | None] = mapped_column(String(255), nullable=True)
    task_priority: Mapped[str] = mapped_column(String(16), nullable=False, server_default="medium", default="medium")
    fire_once: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)

    team_id: Mapped[int | None] = mapped_column(Integer, nullable=True)  # NULL = system-wide
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_reminder_rules_active_entity", "is_active", "entity_type"),
    )


class ReminderNotificationLog(Base):
    """Append-only ledger of reminder firings (dedup + audit). Rows are never updated."""
    __tablename__ = "reminder_notification_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    rule_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("reminder_rules.id", ondelete="CASCADE"), nullable=False
    )
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    notification_type: Mapped[str] = mapped_column(String(16), nullable=False, server_default="in_app")  # in_app/email/both
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="sent")  # sent/failed/pending
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_reminder_logs_dedup", "rule_id", "entity_type", "entity_id", "recipient_id"),
        Index("idx_reminder_logs_recipient", "recipient_id", "sent_at"),
        Index("idx_reminder_logs_sent_at", "sent_at"),
    )


class NotificationModel(Base):
    """In-app notification shown in the CRM notification center."""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, server_default="medium")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_url: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action_text: Mapped[str | None] = mapped_column(String(100), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="false", default=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
