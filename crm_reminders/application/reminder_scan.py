"""
Reminder scan wiring: builds a ReminderEngine on a database session.

Also runnable by hand (cron, ops debugging):

    python -m crm_reminders.application.reminder_scan
    python -m crm_reminders.application.reminder_scan --seed-defaults 1
    python -m crm_reminders.application.reminder_scan --cleanup
"""
import argparse
import json
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from crm_reminders.application.notification_sinks import EmailSink, InAppSink, ReminderNotifier
from crm_reminders.application.reminder_engine import Clock, ReminderEngine, ScanReport, SystemClock
from crm_reminders.config import Settings, get_settings
from crm_reminders.domain.reminder_rule import NOTIFICATION_TYPES
from crm_reminders.infrastructure.reminders.ledger import NotificationLedger
from crm_reminders.infrastructure.reminders.repositories import (
    SqlEntityRepository,
    SqlRecipientResolver,
    SqlRuleRepository,
    SqlTaskCreator,
)

logger = logging.getLogger(__name__)


def build_reminder_engine(db: Session, settings: Settings, clock: Clock | None = None) -> ReminderEngine:
    if settings.REMINDER_NOTIFICATION_TYPE not in NOTIFICATION_TYPES:
        raise ValueError(f"REMINDER_NOTIFICATION_TYPE must be one of {NOTIFICATION_TYPES}")
    tz = settings.reminder_tz()
    return ReminderEngine(
        rules=SqlRuleRepository(db),
        entities=SqlEntityRepository(db, tz),
        recipients=SqlRecipientResolver(db),
        ledger=NotificationLedger(db),
        notifier=ReminderNotifier(InAppSink(db), EmailSink(db, settings)),
        task_creator=SqlTaskCreator(db, tz),
        tz=tz,
        clock=clock,
        notification_type=settings.REMINDER_NOTIFICATION_TYPE,
        cooldown_days=settings.REMINDER_COOLDOWN_DAYS,
        timeout_seconds=settings.REMINDER_SCAN_TIMEOUT_SECONDS or None,
    )


def run_reminder_scan(db: Session, last_completed_at: datetime | None = None,
                      settings: Settings | None = None) -> ScanReport:
    """One full scan on the given session."""
    engine = build_reminder_engine(db, settings or get_settings())
    return engine.run_once(last_completed_at)


def cleanup_reminder_logs(db: Session, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    return NotificationLedger(db).cleanup_old_logs(
        SystemClock().now(), days_to_keep=settings.REMINDER_LOG_RETENTION_DAYS,
    )


def main(argv: list[str] | None = None) -> int:
    from crm_reminders.application.reminder_rules import ReminderRulesService
    from crm_reminders.infrastructure.db.session import session_scope

    parser = argparse.ArgumentParser(description="Run one reminder scan")
    parser.add_argument("--seed-defaults", type=int, metavar="USER_ID",
                        help="insert the missing default rules, owned by USER_ID, before scanning")
    parser.add_argument("--cleanup", action="store_true",
                        help="purge old ledger rows instead of scanning")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    with session_scope() as db:
        if args.seed_defaults is not None:
            ReminderRulesService(db).seed_defaults(args.seed_defaults)
        if args.cleanup:
            deleted = cleanup_reminder_logs(db)
            print(f"Deleted {deleted} ledger row(s)")
            return 0
        report = run_reminder_scan(db)
    print(json.dumps(report.as_dict(), indent=2))
    return 1 if report.entities_failed or report.notifications_failed or report.tasks_failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
