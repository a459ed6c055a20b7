"""
Internal reminder endpoints (ops / external cron).

Meant for operators and external schedulers, not for CRM end users.
"""
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crm_reminders.api.deps import get_db, get_reminder_scheduler
from crm_reminders.application.reminder_engine import ScanTimeoutError, SystemClock
from crm_reminders.application.reminder_rules import ReminderRuleNotFound, ReminderRulesService
from crm_reminders.application.scheduler import ReminderScheduler, ScanInProgress
from crm_reminders.infrastructure.reminders.errors import RepositoryError
from crm_reminders.infrastructure.reminders.ledger import NotificationLedger

router = APIRouter(prefix="/internal/reminders", tags=["reminders"])


@router.post("/run")
def run_scan(scheduler: ReminderScheduler = Depends(get_reminder_scheduler)):
    try:
        report = scheduler.trigger()
    except ScanInProgress:
        return JSONResponse({"error": "A reminder scan is already running"}, status_code=409)
    except ScanTimeoutError as e:
        return JSONResponse({"error": str(e), "report": e.report.as_dict()}, status_code=504)
    except RepositoryError as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    return report.as_dict()


@router.get("/status")
def scan_status(scheduler: ReminderScheduler = Depends(get_reminder_scheduler)):
    last = scheduler.last_completed_at
    return {
        "scheduler_running": scheduler.running,
        "scan_running": scheduler.scan_running,
        "last_completed_at": last.isoformat() if last else None,
        "last_report": scheduler.last_report.as_dict() if scheduler.last_report else None,
    }


@router.get("/rules/{rule_id}/stats")
def rule_stats(rule_id: str, days_back: int = 30, db: Session = Depends(get_db)):
    try:
        ReminderRulesService(db).get_rule(rule_id)
    except ReminderRuleNotFound:
        raise HTTPException(status_code=404, detail="Reminder rule not found")
    stats = NotificationLedger(db).rule_stats(rule_id, SystemClock().now(), days_back=days_back)
    if stats["last_sent"] is not None:
        stats["last_sent"] = stats["last_sent"].isoformat()
    return {"rule_id": rule_id, "days_back": days_back, **stats}
