"""
Celery application for periodic maintenance.

Run the worker and scheduler with:
    celery -A app.celery_app worker --beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "brew_orders",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["app.tasks.loyalty"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        # Daily, off-peak
        "expire-loyalty-points": {
            "task": "expire_loyalty_points",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)
