"""Celery task definitions for scheduled ledger maintenance."""

from celery import Celery
from celery.schedules import crontab

from loanbook.config import settings

celery_app = Celery(
    "loanbook",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.timezone,
    enable_utc=True,
)

# Periodic beat schedule
celery_app.conf.beat_schedule = {
    "sweep-overdue-loans": {
        "task": "loanbook.tasks.portfolio_tasks.sweep_overdue_loans",
        "schedule": crontab(hour=0, minute=15),  # just after local midnight
    },
    "accrue-daily-interest": {
        "task": "loanbook.tasks.portfolio_tasks.accrue_daily_interest",
        "schedule": crontab(hour=0, minute=30),
    },
    "daily-portfolio-snapshot": {
        "task": "loanbook.tasks.portfolio_tasks.capture_daily_snapshots",
        "schedule": crontab(hour=settings.snapshot_hour, minute=settings.snapshot_minute),
    },
}

# Import tasks so they get registered
from loanbook.tasks.portfolio_tasks import *  # noqa
