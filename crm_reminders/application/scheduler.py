"""
Background scheduler: runs the reminder scan inside the FastAPI process.

Jobs:
  - Reminder scan (every REMINDER_SCAN_INTERVAL_MINUTES)
  - Ledger retention cleanup (03:15 in REMINDER_TIMEZONE)

Only one scan runs at a time. A tick (or external trigger) arriving while a
scan is in flight is dropped, never queued.
"""
import logging
import threading
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from crm_reminders.application.reminder_engine import ScanReport, ScanTimeoutError
from crm_reminders.application.reminder_scan import cleanup_reminder_logs, run_reminder_scan
from crm_reminders.config import Settings, get_settings
from crm_reminders.infrastructure.db.session import session_scope

logger = logging.getLogger(__name__)

ScanFn = Callable[[Session, datetime | None, Settings], ScanReport]


class ScanInProgress(RuntimeError):
    pass


class ReminderScheduler:
    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: Callable[[], Session] | None = None,
        scan: ScanFn | None = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._scan = scan or run_reminder_scan
        self._lock = threading.Lock()
        self._scheduler = BackgroundScheduler(daemon=True, timezone=self.settings.reminder_tz())
        self.last_completed_at: datetime | None = None
        self.last_report: ScanReport | None = None

    @property
    def scan_running(self) -> bool:
        return self._lock.locked()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def trigger(self) -> ScanReport:
        """Run one scan now. Raises ScanInProgress if another scan holds the lock."""
        if not self._lock.acquire(blocking=False):
            raise ScanInProgress("a reminder scan is already running")
        try:
            try:
                with session_scope(self._session_factory) as db:
                    report = self._scan(db, self.last_completed_at, self.settings)
            except ScanTimeoutError as e:
                self.last_report = e.report
                raise
            self.last_report = report
            self.last_completed_at = report.finished_at
            return report
        finally:
            self._lock.release()

    # -----------------------------------------------------------------------
    # Jobs
    # -----------------------------------------------------------------------

    def _run_scan(self) -> None:
        try:
            self.trigger()
        except ScanInProgress:
            logger.warning("Reminder scan still running, tick dropped")
        except ScanTimeoutError:
            logger.error("Reminder scan timed out after %ss, cycle abandoned",
                         self.settings.REMINDER_SCAN_TIMEOUT_SECONDS)
        except Exception:
            logger.exception("Reminder scan job failed")

    def _run_cleanup(self) -> None:
        try:
            with session_scope(self._session_factory) as db:
                cleanup_reminder_logs(db, self.settings)
        except Exception:
            logger.exception("Reminder ledger cleanup job failed")

    def start(self) -> None:
        """Start the background scheduler with the scan and cleanup jobs."""
        # Reminder scan, max_instances=1 plus the lock: overlapping ticks are dropped
        self._scheduler.add_job(
            self._run_scan,
            "interval",
            minutes=self.settings.REMINDER_SCAN_INTERVAL_MINUTES,
            id="reminder_scan",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

        # Ledger retention, daily at 03:15 local time
        self._scheduler.add_job(
            self._run_cleanup,
            CronTrigger(hour=3, minute=15, timezone=self.settings.reminder_tz()),
            id="reminder_log_cleanup",
            replace_existing=True,
        )

        self._scheduler.start()
        logger.info(
            "Scheduler started: reminder_scan (every %d min), reminder_log_cleanup (03:15 %s)",
            self.settings.REMINDER_SCAN_INTERVAL_MINUTES, self.settings.REMINDER_TIMEZONE,
        )

    def shutdown(self) -> None:
        """Gracefully stop the scheduler."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
