"""
Celery Tasks for webhook delivery and maintenance

Worker side of the delivery pipeline. The database is the source of truth:
tasks carry only ids (and the delivery claim token), every state change is a
compare-and-set in the domain services, so a duplicated or lost broker
message never produces a double transition.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from relay.workers.celery_app import celery_app
from relay.db.database import get_task_session
from relay.domain.services.delivery_store import ClaimedDelivery, DeliveryStore
from relay.domain.services.delivery_worker import DeliveryWorker, dispatch_due
from relay.domain.services.idempotency_service import IdempotencyService
from relay.domain.services.incoming_gateway import IncomingWebhookGateway, process_incoming_event
from relay.core.config import settings
from relay.core.logging import get_logger, log_context, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def publish_delivery(claim: ClaimedDelivery) -> None:
    deliver_webhook.delay(claim.delivery_id, claim.claim_token)


def enqueue_incoming_event(source: str, event_id: str) -> None:
    process_incoming_webhook_event.delay(source, event_id)


# ==================== Outbound ====================

@celery_app.task(name="relay.workers.tasks.dispatch_webhook_deliveries")
def dispatch_webhook_deliveries(limit: int | None = None):
    """
    Claim due deliveries and publish one deliver_webhook message per claim.
    Runs every 10 seconds from beat.
    """

    async def _dispatch():
        async with get_task_session() as db:
            published = await dispatch_due(db, publish_delivery, limit=limit)
            return {"published": published}

    return run_async(_dispatch())


@celery_app.task(name="relay.workers.tasks.deliver_webhook")
def deliver_webhook(delivery_id: int, claim_token: str):
    """Perform one HTTP attempt for a claimed delivery"""

    async def _deliver():
        async with get_task_session() as db:
            with log_context(delivery_id=delivery_id):
                status = await DeliveryWorker(db).deliver(delivery_id, claim_token)
            return {
                "delivery_id": delivery_id,
                "status": status.value if status else None,
            }

    return run_async(_deliver())


@celery_app.task(name="relay.workers.tasks.reap_stale_webhook_deliveries")
def reap_stale_webhook_deliveries():
    """In-flight claims whose worker vanished are counted as failed attempts"""

    async def _reap():
        async with get_task_session() as db:
            reaped = await DeliveryStore(db).reap_stale_in_flight()
            if reaped:
                logger.warning("Reaped stale in-flight deliveries", extra_data={"reaped": reaped})
            return {"reaped": reaped}

    return run_async(_reap())


# ==================== Idempotency ====================

@celery_app.task(name="relay.workers.tasks.purge_expired_idempotency_keys")
def purge_expired_idempotency_keys():
    """מחיקת מפתחות idempotency שפג תוקפם (24 שעות), בכל סטטוס"""

    async def _purge():
        async with get_task_session() as db:
            deleted = await IdempotencyService(db).purge_expired()
            logger.info("Purged expired idempotency keys", extra_data={"deleted": deleted})
            return {"deleted": deleted}

    return run_async(_purge())


# ==================== Inbound ====================

@celery_app.task(name="relay.workers.tasks.process_incoming_webhook_event")
def process_incoming_webhook_event(source: str, event_id: str):
    """Run the registered handler for a verified inbound event"""

    async def _process():
        async with get_task_session() as db:
            with log_context(source=source, event_id=event_id):
                status = await process_incoming_event(db, source, event_id)
            return {
                "source": source,
                "event_id": event_id,
                "status": status.value if status else None,
            }

    return run_async(_process())


@celery_app.task(name="relay.workers.tasks.requeue_stuck_incoming_events")
def requeue_stuck_incoming_events():
    """אירועים שנתקעו ב-received/processing (הודעה שאבדה או worker שקרס) נשלחים שוב לתור"""

    async def _requeue():
        async with get_task_session() as db:
            gateway = IncomingWebhookGateway(db, enqueue=enqueue_incoming_event)
            requeued = await gateway.requeue_stuck()
            return {"requeued": requeued}

    return run_async(_requeue())


@celery_app.task(name="relay.workers.tasks.cleanup_old_webhook_events")
def cleanup_old_webhook_events(days: int | None = None):
    """ניקוי אירועים נכנסים שעובדו מטבלת webhook_events"""
    days = days if days is not None else settings.INCOMING_EVENT_RETENTION_DAYS

    async def _cleanup():
        async with get_task_session() as db:
            gateway = IncomingWebhookGateway(db, enqueue=enqueue_incoming_event)
            deleted = await gateway.cleanup_processed(retention_days=days)
            logger.info(
                "Cleaned up old webhook events",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
