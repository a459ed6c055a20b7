"""
Notification sinks used by the reminder engine.

- InAppSink:  stores a row in `notifications` and pushes it to the user's devices
- EmailSink:  plain-text email over SMTP (fails when SMTP is not configured)
- ReminderNotifier: routes a reminder to the sinks implied by notification_type
                    (in_app | email | both)

Every sink raises DispatchError when the reminder could not be delivered.
In `both` mode a delivered email followed by a failed in-app write raises
PartialDeliveryError: the reminder reached the user and must not be re-sent.
"""
import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_reminders.application.push_service import send_push_to_user
from crm_reminders.config import Settings
from crm_reminders.infrastructure.db.models import NotificationModel, User

logger = logging.getLogger(__name__)

# Notification center type per (entity_type, trigger_type)
NOTIFICATION_KINDS: dict[tuple[str, str], str] = {
    ("task", "due_soon"): "task_due_soon",
    ("task", "overdue"): "task_overdue",
    ("quote", "due_soon"): "quote_expiring",
    ("quote", "expired"): "quote_expired",
    ("invoice", "due_soon"): "invoice_due_soon",
    ("invoice", "unpaid"): "invoice_overdue",
}


class DispatchError(Exception):
    pass


class PartialDeliveryError(DispatchError):
    """At least one channel delivered, another failed. Recorded as sent."""
    pass


@dataclass(frozen=True)
class RenderedReminder:
    title: str
    body: str
    action_url: str
    action_text: str
    priority: str
    entity_type: str
    entity_id: int
    kind: str = "system_alert"


class InAppSink:
    def __init__(self, db: Session):
        self.db = db

    def send(self, recipient_id: int, reminder: RenderedReminder) -> None:
        notif = NotificationModel(
            user_id=recipient_id,
            type=reminder.kind,
            priority=reminder.priority,
            title=reminder.title,
            message=reminder.body,
            action_url=reminder.action_url,
            action_text=reminder.action_text,
            entity_type=reminder.entity_type,
            entity_id=reminder.entity_id,
            is_read=False,
        )
        try:
            self.db.add(notif)
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DispatchError(f"in-app notification not stored: {e}") from e

        try:
            send_push_to_user(self.db, recipient_id, {
                "title": reminder.title,
                "body": reminder.body,
                "url": reminder.action_url,
                "priority": reminder.priority,
            })
        except Exception:
            logger.exception("Web push failed for user_id=%s", recipient_id)


class EmailSink:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def send(self, recipient_id: int, reminder: RenderedReminder) -> None:
        user = self.db.get(User, recipient_id)
        if user is None or not user.email:
            raise DispatchError(f"user {recipient_id} has no email address")

        cfg = self.settings
        if not cfg.EMAIL_SMTP_HOST:
            logger.warning("EMAIL not sent (SMTP not configured): to=%s subject=%s", user.email, reminder.title)
            raise DispatchError("SMTP not configured")

        msg = EmailMessage()
        msg["Subject"] = reminder.title
        msg["From"] = cfg.EMAIL_FROM
        msg["To"] = user.email
        link = f"{cfg.FRONTEND_URL.rstrip('/')}{reminder.action_url}" if reminder.action_url else ""
        greeting = f"Hello {user.full_name}," if user.full_name else "Hello,"
        msg.set_content(f"{greeting}\n\n{reminder.body}\n\n{reminder.action_text}: {link}\n")

        try:
            with smtplib.SMTP(host=cfg.EMAIL_SMTP_HOST, port=cfg.EMAIL_SMTP_PORT, timeout=15) as s:
                s.ehlo()
                if cfg.EMAIL_SMTP_STARTTLS:
                    s.starttls()
                    s.ehlo()
                if cfg.EMAIL_SMTP_USER:
                    s.login(cfg.EMAIL_SMTP_USER, cfg.EMAIL_SMTP_PASSWORD)
                s.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DispatchError(f"email to {user.email} failed: {e}") from e


class ReminderNotifier:
    """Fans a reminder out to in-app and/or email. Email goes first so a failed
    email never leaves an orphan in-app row behind."""

    def __init__(self, in_app: InAppSink, email: EmailSink):
        self.in_app = in_app
        self.email = email

    def send(self, notification_type: str, recipient_id: int, reminder: RenderedReminder) -> None:
        if notification_type not in ("in_app", "email", "both"):
            raise DispatchError(f"unknown notification type: {notification_type}")
        if notification_type == "in_app":
            self.in_app.send(recipient_id, reminder)
            return

        self.email.send(recipient_id, reminder)
        if notification_type == "both":
            try:
                self.in_app.send(recipient_id, reminder)
            except DispatchError as e:
                raise PartialDeliveryError(f"email delivered, in-app failed: {e}") from e
