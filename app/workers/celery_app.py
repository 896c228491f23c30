"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "commerce_hub",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-due-jobs-every-5-seconds": {
        "task": "app.workers.tasks.process_due_jobs",
        "schedule": 5.0,
    },
    # jobs שנשארו running אחרי קריסת worker חוזרים לתור
    "recover-stuck-jobs-every-5-minutes": {
        "task": "app.workers.tasks.recover_stuck_jobs",
        "schedule": 300.0,
    },
    "report-stuck-sagas-every-5-minutes": {
        "task": "app.workers.tasks.report_stuck_sagas",
        "schedule": 300.0,
    },
    "cleanup-idempotency-claims-daily": {
        "task": "app.workers.tasks.cleanup_idempotency_claims",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-dead-letters-daily": {
        "task": "app.workers.tasks.cleanup_dead_letters",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-old-jobs-daily": {
        "task": "app.workers.tasks.cleanup_old_jobs",
        "schedule": 86400.0,  # 24 hours
    },
}
