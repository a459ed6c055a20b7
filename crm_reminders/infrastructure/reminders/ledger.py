"""
Persistent notification ledger (reminder_notification_logs).

Answers "was this (rule, entity, recipient) already notified inside the
cooldown window?" and keeps the audit trail of every firing attempt.
Rows are only ever inserted; each insert is committed on its own so an
interrupted scan never leaves a half-applied batch.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from crm_reminders.infrastructure.db.models import ReminderNotificationLog
from crm_reminders.infrastructure.reminders.errors import repository_errors

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class NotificationLedger:
    def __init__(self, db: Session):
        self.db = db

    def was_recently_notified(
        self,
        rule_id: str,
        entity_type: str,
        entity_id: int,
        recipient_id: int,
        since: datetime | None,
    ) -> bool:
        """True if a `sent` row exists at or after `since` (any `sent` row when since is None)."""
        with repository_errors(self.db, "ledger lookup"):
            q = self.db.query(ReminderNotificationLog.id).filter(
                ReminderNotificationLog.rule_id == rule_id,
                ReminderNotificationLog.entity_type == entity_type,
                ReminderNotificationLog.entity_id == entity_id,
                ReminderNotificationLog.recipient_id == recipient_id,
                ReminderNotificationLog.status == STATUS_SENT,
            )
            if since is not None:
                q = q.filter(ReminderNotificationLog.sent_at >= _utc(since))
            return q.first() is not None

    def record(
        self,
        rule_id: str,
        entity_type: str,
        entity_id: int,
        recipient_id: int,
        notification_type: str,
        status: str,
        sent_at: datetime,
        error_message: str | None = None,
    ) -> ReminderNotificationLog:
        entry = ReminderNotificationLog(
            rule_id=rule_id,
            entity_type=entity_type,
            entity_id=entity_id,
            recipient_id=recipient_id,
            notification_type=notification_type,
            status=status,
            error_message=error_message,
            sent_at=_utc(sent_at),
        )
        with repository_errors(self.db, "ledger insert"):
            self.db.add(entry)
            self.db.commit()
        logger.debug(
            "Ledger %s: rule=%s %s=%s recipient=%s",
            status, rule_id, entity_type, entity_id, recipient_id,
        )
        return entry

    # -----------------------------------------------------------------------
    # Audit / operations
    # -----------------------------------------------------------------------

    def entity_history(self, entity_type: str, entity_id: int, limit: int = 50) -> list[ReminderNotificationLog]:
        with repository_errors(self.db, "entity history"):
            return (
                self.db.query(ReminderNotificationLog)
                .filter(
                    ReminderNotificationLog.entity_type == entity_type,
                    ReminderNotificationLog.entity_id == entity_id,
                )
                .order_by(ReminderNotificationLog.sent_at.desc())
                .limit(limit)
                .all()
            )

    def user_history(self, recipient_id: int, limit: int = 50) -> list[ReminderNotificationLog]:
        with repository_errors(self.db, "user history"):
            return (
                self.db.query(ReminderNotificationLog)
                .filter(ReminderNotificationLog.recipient_id == recipient_id)
                .order_by(ReminderNotificationLog.sent_at.desc())
                .limit(limit)
                .all()
            )

    def rule_stats(self, rule_id: str, now: datetime, days_back: int = 30) -> dict:
        """Sent/failed counts for a rule over the last `days_back` days."""
        cutoff = _utc(now) - timedelta(days=days_back)
        with repository_errors(self.db, "rule stats"):
            rows = (
                self.db.query(
                    ReminderNotificationLog.status,
                    func.count(ReminderNotificationLog.id),
                    func.max(ReminderNotificationLog.sent_at),
                )
                .filter(
                    ReminderNotificationLog.rule_id == rule_id,
                    ReminderNotificationLog.sent_at >= cutoff,
                )
                .group_by(ReminderNotificationLog.status)
                .all()
            )
        counts = {status: count for status, count, _ in rows}
        total_sent = counts.get(STATUS_SENT, 0)
        total_failed = counts.get(STATUS_FAILED, 0)
        total = total_sent + total_failed
        last_sent = next((last for status, _, last in rows if status == STATUS_SENT), None)
        return {
            "total_sent": total_sent,
            "total_failed": total_failed,
            "success_rate": round(total_sent / total * 100, 2) if total else 0.0,
            "last_sent": last_sent,
        }

    def cleanup_old_logs(self, now: datetime, days_to_keep: int = 90) -> int:
        """Delete ledger rows older than the retention period. Returns deleted count."""
        cutoff = _utc(now) - timedelta(days=days_to_keep)
        with repository_errors(self.db, "ledger cleanup"):
            deleted = (
                self.db.query(ReminderNotificationLog)
                .filter(ReminderNotificationLog.sent_at < cutoff)
                .delete(synchronize_session=False)
            )
            self.db.commit()
        logger.info("Ledger cleanup: %d row(s) older than %d days removed", deleted, days_to_keep)
        return deleted
