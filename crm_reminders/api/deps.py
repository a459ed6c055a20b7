"""
FastAPI dependencies (DB session, reminder scheduler)
"""
from fastapi import Request

from crm_reminders.application.scheduler import ReminderScheduler
from crm_reminders.infrastructure.db.session import get_db as _get_db


# Re-export get_db for routers
get_db = _get_db


def get_reminder_scheduler(request: Request) -> ReminderScheduler:
    """The scheduler created by create_app() and kept on app.state."""
    return request.app.state.reminder_scheduler
