"""Celery app and task registration."""

from celery import Celery

from app.config import settings

celery_app = Celery(
    "paperdesk",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        # Reconcile positions and apply exit policies for users with automation on
        "reconcile-positions": {
            "task": "app.tasks.trade_tasks.reconcile_positions",
            "schedule": settings.position_refresh_seconds,
        },
        # Account + positions snapshot for the dashboard and the AI strategist
        "refresh-account": {
            "task": "app.tasks.trade_tasks.refresh_account",
            "schedule": settings.account_refresh_seconds,
        },
    },
)

# Import tasks so Celery discovers them
from app.tasks import trade_tasks  # noqa: F401, E402
