"""
Celery Application Configuration
"""
from celery import Celery

from bakery_orders.core.config import settings

celery_app = Celery(
    "bakery_orders",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["bakery_orders.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Africa/Nairobi",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "reconcile-mpesa-payments-every-minute": {
        "task": "bakery_orders.workers.tasks.reconcile_mpesa_payments",
        "schedule": 60.0,
    },
    "expire-stale-stk-initiations-every-5-minutes": {
        "task": "bakery_orders.workers.tasks.expire_stale_stk_initiations",
        "schedule": 300.0,
    },
    "cleanup-idempotency-records-daily": {
        "task": "bakery_orders.workers.tasks.cleanup_idempotency_records",
        "schedule": 86400.0,  # 24 hours
    },
}
