"""
בדיקות ל-Celery tasks: relay/workers/tasks.py

מכסה:
- ניהול event loop ב-Celery
- ניתוב tasks לתורים ולוח הזמנים של beat
- dispatch / deliver / reap של משלוחים יוצאים
- עיבוד, requeue וניקוי של אירועים נכנסים
- ניקוי מפתחות idempotency
"""
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from relay.core.clock import utcnow
from relay.db.models.webhook_delivery import WebhookDeliveryStatus
from relay.db.models.webhook_event import IncomingEventStatus, IncomingWebhookEvent
from relay.domain.services.delivery_store import DeliveryStore
from relay.domain.services.idempotency_service import IdempotencyService, build_scope
from relay.domain.services.incoming_handlers import register_incoming_handler
from relay.workers import tasks
from relay.workers.celery_app import celery_app


@contextmanager
def _patch_task_runtime(db_session):
    """
    Run a task body on the test's own loop and session.

    הטאסקים הם sync וקוראים ל-run_async() שיוצר event loop חדש. בבדיקה
    run_async מחזיר את ה-coroutine כמו שהוא, והבדיקה עושה לו await.
    """
    with patch("relay.workers.tasks.run_async", side_effect=lambda coro: coro):
        with patch("relay.workers.tasks.get_task_session") as mock_session_ctx:
            mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
            mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
            yield


class TestEventLoopManagement:
    """בדיקות ל-get_event_loop ו-run_async"""

    def test_get_event_loop_creates_and_closes(self) -> None:
        with tasks.get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        async def _coro():
            return 42

        assert tasks.run_async(_coro()) == 42


class TestRouting:
    @pytest.mark.unit
    def test_tasks_are_routed_to_their_queues(self):
        routes = celery_app.conf.task_routes

        assert routes["relay.workers.tasks.deliver_webhook"] == {"queue": "webhooks"}
        assert routes["relay.workers.tasks.process_incoming_webhook_event"] == {"queue": "incoming"}
        assert routes["relay.workers.tasks.*"] == {"queue": "maintenance"}
        assert celery_app.conf.task_default_queue == "maintenance"

    @pytest.mark.unit
    def test_beat_schedule_points_at_registered_tasks(self):
        schedule = celery_app.conf.beat_schedule
        intervals = {entry["task"].rsplit(".", 1)[-1]: entry["schedule"] for entry in schedule.values()}

        assert intervals == {
            "dispatch_webhook_deliveries": 10.0,
            "reap_stale_webhook_deliveries": 60.0,
            "purge_expired_idempotency_keys": 3600.0,
            "requeue_stuck_incoming_events": 300.0,
            "cleanup_old_webhook_events": 86400.0,
        }
        for entry in schedule.values():
            assert entry["task"] in celery_app.tasks

    @pytest.mark.unit
    def test_worker_is_at_least_once(self):
        assert celery_app.conf.task_acks_late is True
        assert celery_app.conf.worker_prefetch_multiplier == 1


class TestOutboundTasks:
    @pytest.mark.unit
    async def test_dispatch_publishes_deliver_messages(self, db_session, endpoint_factory, webhook_delivery_factory):
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(endpoint.id)

        with _patch_task_runtime(db_session), patch.object(tasks.deliver_webhook, "delay") as delay:
            result = await tasks.dispatch_webhook_deliveries()

        assert result == {"published": 1}
        delivery_id, claim_token = delay.call_args.args
        assert delivery_id == delivery.id
        stored = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert stored.claim_token == claim_token

    @pytest.mark.unit
    async def test_deliver_task(self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http):
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(endpoint.id)
        [claim] = await DeliveryStore(db_session).claim_due()

        with _patch_task_runtime(db_session):
            result = await tasks.deliver_webhook(claim.delivery_id, claim.claim_token)

        assert result == {"delivery_id": delivery.id, "status": "delivered"}

    @pytest.mark.unit
    async def test_deliver_task_with_stale_claim(self, db_session, mock_webhook_http):
        with _patch_task_runtime(db_session):
            result = await tasks.deliver_webhook(999, "gone")

        assert result == {"delivery_id": 999, "status": None}
        mock_webhook_http.post.assert_not_called()

    @pytest.mark.unit
    async def test_reap_task(self, db_session, endpoint_factory, webhook_delivery_factory):
        endpoint = await endpoint_factory()
        claimed_at = utcnow() - timedelta(hours=1)
        await webhook_delivery_factory(endpoint.id, next_attempt_at=claimed_at)
        store = DeliveryStore(db_session)
        await store.claim_due(now=claimed_at)

        with _patch_task_runtime(db_session):
            result = await tasks.reap_stale_webhook_deliveries()

        assert result == {"reaped": 1}
        [delivery] = await store.list_deliveries()
        assert delivery.status == WebhookDeliveryStatus.PENDING_RETRY
        assert delivery.attempts == 1


class TestIdempotencyTasks:
    @pytest.mark.unit
    async def test_purge_expired_keys(self, db_session):
        service = IdempotencyService(db_session)
        scope = build_scope("owner-1", "POST", "/api/events")
        await service.acquire("old", scope, "hash", now=utcnow() - timedelta(days=2))
        await service.acquire("fresh", scope, "hash")

        with _patch_task_runtime(db_session):
            result = await tasks.purge_expired_idempotency_keys()

        assert result == {"deleted": 1}


class TestInboundTasks:
    @pytest.mark.unit
    async def test_process_incoming_event_task(self, db_session):
        @register_incoming_handler("stripe")
        async def handle(event):
            pass

        db_session.add(IncomingWebhookEvent(
            source="stripe", event_id="evt_1", payload={"id": "evt_1"}, status=IncomingEventStatus.RECEIVED,
        ))
        await db_session.commit()

        with _patch_task_runtime(db_session):
            result = await tasks.process_incoming_webhook_event("stripe", "evt_1")

        assert result == {"source": "stripe", "event_id": "evt_1", "status": "processed"}

    @pytest.mark.unit
    async def test_requeue_stuck_task(self, db_session):
        old = utcnow() - timedelta(hours=2)
        db_session.add(IncomingWebhookEvent(
            source="stripe", event_id="evt_stuck", payload={}, status=IncomingEventStatus.PROCESSING,
            received_at=old, updated_at=old,
        ))
        await db_session.commit()

        with _patch_task_runtime(db_session), \
                patch.object(tasks.process_incoming_webhook_event, "delay") as delay:
            result = await tasks.requeue_stuck_incoming_events()

        assert result == {"requeued": 1}
        delay.assert_called_once_with("stripe", "evt_stuck")

    @pytest.mark.unit
    async def test_cleanup_old_events_task(self, db_session):
        old = utcnow() - timedelta(days=14)
        db_session.add_all([
            IncomingWebhookEvent(
                source="stripe", event_id="old", payload={}, status=IncomingEventStatus.PROCESSED,
                received_at=old, updated_at=old, processed_at=old,
            ),
            IncomingWebhookEvent(
                source="stripe", event_id="new", payload={}, status=IncomingEventStatus.PROCESSED,
                processed_at=utcnow(),
            ),
            IncomingWebhookEvent(
                source="stripe", event_id="stuck", payload={}, status=IncomingEventStatus.PROCESSING,
                received_at=old, updated_at=old,
            ),
        ])
        await db_session.commit()

        with _patch_task_runtime(db_session):
            result = await tasks.cleanup_old_webhook_events(days=7)

        assert result == {"deleted": 1}
