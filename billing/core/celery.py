"""
Celery configuration for background tasks
"""
from celery import Celery
from celery.schedules import crontab
import logging

from billing.core.config import settings

logger = logging.getLogger(__name__)

# Create Celery instance
celery_app = Celery(
    "billing",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "billing.modules.email.tasks",
        "billing.modules.signatures.tasks",
        "billing.modules.documents.tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Rate limiting
    task_default_rate_limit="100/m",

    # Result backend settings
    result_expires=3600,  # 1 hour

    # Un broker caído no debe bloquear la respuesta HTTP
    broker_connection_timeout=3,
    task_publish_retry_policy={"max_retries": 1, "interval_start": 0, "interval_step": 0.5},

    # Task routes for different queues
    task_routes={
        "billing.modules.email.tasks.*": {"queue": "email"},
        "billing.modules.signatures.tasks.*": {"queue": "maintenance"},
        "billing.modules.documents.tasks.*": {"queue": "maintenance"},
    },

    # Beat schedule for periodic tasks
    beat_schedule={
        "expire-signature-requests": {
            "task": "billing.modules.signatures.tasks.expire_signature_requests",
            "schedule": 3600.0,  # Run every hour
        },
        "expire-quotes": {
            "task": "billing.modules.documents.tasks.expire_quotes",
            "schedule": crontab(hour=0, minute=15),  # Run daily
        },
    }
)

if __name__ == "__main__":
    celery_app.start()
