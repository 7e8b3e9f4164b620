"""
Celery Application Configuration

Three queues, each drained by its own worker pool (see scripts/run_worker.py):
- webhooks     outbound HTTP attempts, one message per claimed delivery
- incoming     processing of verified inbound webhook events
- maintenance  periodic scheduler / reaper / cleanup tasks
"""
from celery import Celery

from relay.core.config import settings

celery_app = Celery(
    "relay",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["relay.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # ה-HTTP timeout הוא 30 שניות: מגבלת task מרווחת מעליו
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="maintenance",
    task_routes={
        "relay.workers.tasks.deliver_webhook": {"queue": "webhooks"},
        "relay.workers.tasks.process_incoming_webhook_event": {"queue": "incoming"},
        "relay.workers.tasks.*": {"queue": "maintenance"},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "dispatch-webhook-deliveries-every-10-seconds": {
        "task": "relay.workers.tasks.dispatch_webhook_deliveries",
        "schedule": 10.0,
    },
    # תביעות in_flight שה-worker שלהן נעלם: חוזרות ל-backoff
    "reap-stale-webhook-deliveries-every-minute": {
        "task": "relay.workers.tasks.reap_stale_webhook_deliveries",
        "schedule": 60.0,
    },
    "purge-expired-idempotency-keys-hourly": {
        "task": "relay.workers.tasks.purge_expired_idempotency_keys",
        "schedule": 3600.0,
    },
    "requeue-stuck-incoming-events-every-5-minutes": {
        "task": "relay.workers.tasks.requeue_stuck_incoming_events",
        "schedule": 300.0,  # 5 דקות
    },
    "cleanup-old-webhook-events-daily": {
        "task": "relay.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}
