"""
FastAPI application factory
"""
import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from crm_reminders.api.v1 import reminders
from crm_reminders.application.scheduler import ReminderScheduler
from crm_reminders.config import get_settings
from crm_reminders.infrastructure.db.session import check_db_connection

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(scheduler: ReminderScheduler | None = None) -> FastAPI:
    """
    Application factory: reminder scheduler + operational endpoints

    Returns:
        Configured FastAPI app
    """
    settings = get_settings()

    app = FastAPI(
        title="CRM Reminders",
        debug=settings.DEBUG,
    )
    app.state.reminder_scheduler = scheduler or ReminderScheduler(settings)

    app.include_router(reminders.router)

    @app.on_event("startup")
    def _start_scheduler():
        if settings.REMINDER_SCHEDULER_ENABLED:
            app.state.reminder_scheduler.start()
        else:
            logger.info("Reminder scheduler disabled (REMINDER_SCHEDULER_ENABLED=false)")

    @app.on_event("shutdown")
    def _stop_scheduler():
        app.state.reminder_scheduler.shutdown()

    # Health checks
    @app.get("/health", response_class=PlainTextResponse, tags=["system"])
    def health():
        """Health check endpoint"""
        return "ok"

    @app.get("/ready", response_class=PlainTextResponse, tags=["system"])
    def ready():
        """Readiness check endpoint (checks the database is reachable)"""
        check_db_connection()
        return "ok"

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "crm_reminders.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
