"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "home_services",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.maintenance_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.deliver_notification": {"rate_limit": "20/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.maintenance_tasks.*": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Expired OTP challenges are dead rows; sweep them
    "purge-expired-otp-challenges": {
        "task": "tasks.maintenance_tasks.purge_expired_otp_challenges",
        "schedule": 600,  # every 10 minutes
    },

    # Recompute current_jobs from active bookings and log any drift
    "reconcile-worker-jobs": {
        "task": "tasks.maintenance_tasks.reconcile_worker_jobs",
        "schedule": crontab(minute=15),  # every hour
    },

    # Compare wallet balances with their ledgers
    "audit-wallet-ledgers": {
        "task": "tasks.maintenance_tasks.audit_wallet_ledgers",
        "schedule": crontab(hour=2, minute=0),  # 02:00 IST
    },
}
