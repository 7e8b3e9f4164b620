"""
Tests for the outbound delivery worker and scheduler
"""
import json

import httpx
import pytest

from relay.core.signatures import verify
from relay.db.models.webhook_delivery import WebhookDeliveryStatus
from relay.domain.services.delivery_store import DeliveryStore
from relay.domain.services.delivery_worker import (
    DELIVERY_ID_HEADER,
    EVENT_ID_HEADER,
    EVENT_TYPE_HEADER,
    SIGNATURE_HEADER,
    DeliveryWorker,
    build_delivery_body,
    dispatch_due,
)
from tests.conftest import make_http_response


async def _claim_one(db_session):
    [claim] = await DeliveryStore(db_session).claim_due()
    return claim


class TestDeliveryBody:
    @pytest.mark.unit
    async def test_canonical_envelope(self, endpoint_factory, webhook_delivery_factory):
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(
            endpoint.id, event_id="evt_42", payload={"b": 2, "a": "שלום"}
        )

        body = build_delivery_body(delivery)

        assert body == '{"data":{"a":"שלום","b":2},"id":"evt_42","type":"invoice.paid"}'.encode()


class TestDeliver:
    @pytest.mark.unit
    async def test_success_is_signed_and_recorded(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http
    ):
        endpoint = await endpoint_factory(secret="endpoint-secret")
        delivery = await webhook_delivery_factory(endpoint.id, event_id="evt_7")
        claim = await _claim_one(db_session)

        status = await DeliveryWorker(db_session).deliver(claim.delivery_id, claim.claim_token)

        assert status == WebhookDeliveryStatus.DELIVERED
        mock_webhook_http.post.assert_awaited_once()
        call = mock_webhook_http.post.call_args
        assert call.args[0] == endpoint.url
        body = call.kwargs["content"]
        headers = call.kwargs["headers"]
        assert json.loads(body)["id"] == "evt_7"
        assert headers[EVENT_ID_HEADER] == "evt_7"
        assert headers[EVENT_TYPE_HEADER] == "invoice.paid"
        assert headers[DELIVERY_ID_HEADER] == str(delivery.id)
        # המקבל יכול לאמת את החתימה עם ה-secret של ה-endpoint
        verify(headers[SIGNATURE_HEADER], body, "endpoint-secret")

        delivery = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert delivery.status == WebhookDeliveryStatus.DELIVERED
        assert delivery.attempts == 1
        assert delivery.last_response_body == "ok"

    @pytest.mark.unit
    async def test_non_2xx_schedules_retry(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http
    ):
        mock_webhook_http.post.return_value = make_http_response(503, "x" * 5000)
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(endpoint.id)
        claim = await _claim_one(db_session)

        status = await DeliveryWorker(db_session).deliver(claim.delivery_id, claim.claim_token)

        assert status == WebhookDeliveryStatus.PENDING_RETRY
        delivery = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert delivery.attempts == 1
        assert delivery.last_response_status == 503
        assert len(delivery.last_response_body) == 1000
        assert delivery.last_error == "Endpoint returned status 503"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "exc,prefix",
        [
            (httpx.ReadTimeout("read timed out"), "Timed out"),
            (httpx.ConnectError("connection refused"), "Network error"),
        ],
    )
    async def test_transport_errors_schedule_retry(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http, exc, prefix
    ):
        mock_webhook_http.post.side_effect = exc
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(endpoint.id)
        claim = await _claim_one(db_session)

        status = await DeliveryWorker(db_session).deliver(claim.delivery_id, claim.claim_token)

        assert status == WebhookDeliveryStatus.PENDING_RETRY
        delivery = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert delivery.last_error.startswith(prefix)
        assert delivery.last_response_status is None

    @pytest.mark.unit
    async def test_fifth_failure_exhausts(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http
    ):
        mock_webhook_http.post.return_value = make_http_response(500, "error")
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(
            endpoint.id, status=WebhookDeliveryStatus.PENDING_RETRY, attempts=4
        )
        claim = await _claim_one(db_session)

        status = await DeliveryWorker(db_session).deliver(claim.delivery_id, claim.claim_token)

        assert status == WebhookDeliveryStatus.FAILED_EXHAUSTED
        delivery = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert delivery.attempts == 5
        assert delivery.next_attempt_at is None

    @pytest.mark.unit
    async def test_stale_claim_sends_nothing(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http
    ):
        endpoint = await endpoint_factory()
        await webhook_delivery_factory(endpoint.id)
        claim = await _claim_one(db_session)

        status = await DeliveryWorker(db_session).deliver(claim.delivery_id, "someone-elses-token")

        assert status is None
        mock_webhook_http.post.assert_not_called()

    @pytest.mark.unit
    async def test_duplicate_message_delivers_once(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http
    ):
        endpoint = await endpoint_factory()
        await webhook_delivery_factory(endpoint.id)
        claim = await _claim_one(db_session)
        worker = DeliveryWorker(db_session)

        first = await worker.deliver(claim.delivery_id, claim.claim_token)
        second = await worker.deliver(claim.delivery_id, claim.claim_token)

        assert first == WebhookDeliveryStatus.DELIVERED
        assert second is None
        assert mock_webhook_http.post.await_count == 1

    @pytest.mark.unit
    async def test_endpoint_disabled_after_claim(
        self, db_session, endpoint_factory, webhook_delivery_factory, mock_webhook_http
    ):
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(endpoint.id)
        claim = await _claim_one(db_session)
        endpoint.enabled = False
        await db_session.commit()

        status = await DeliveryWorker(db_session).deliver(claim.delivery_id, claim.claim_token)

        assert status == WebhookDeliveryStatus.PENDING_RETRY
        mock_webhook_http.post.assert_not_called()
        delivery = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert delivery.attempts == 0
        assert delivery.status == WebhookDeliveryStatus.PENDING_RETRY


class TestDispatchDue:
    @pytest.mark.unit
    async def test_publishes_one_message_per_claim(self, db_session, endpoint_factory, webhook_delivery_factory):
        endpoint = await endpoint_factory()
        await webhook_delivery_factory(endpoint.id)
        await webhook_delivery_factory(endpoint.id)
        published = []

        count = await dispatch_due(db_session, published.append)

        assert count == 2
        assert len({claim.claim_token for claim in published}) == 2

    @pytest.mark.unit
    async def test_async_publisher(self, db_session, endpoint_factory, webhook_delivery_factory):
        endpoint = await endpoint_factory()
        await webhook_delivery_factory(endpoint.id)
        published = []

        async def publish(claim):
            published.append(claim)

        assert await dispatch_due(db_session, publish) == 1
        assert len(published) == 1

    @pytest.mark.unit
    async def test_publish_failure_returns_claim_without_attempt(
        self, db_session, endpoint_factory, webhook_delivery_factory
    ):
        endpoint = await endpoint_factory()
        delivery = await webhook_delivery_factory(endpoint.id)

        def broken_broker(claim):
            raise ConnectionError("broker unreachable")

        count = await dispatch_due(db_session, broken_broker)

        assert count == 0
        delivery = await DeliveryStore(db_session).get_delivery(delivery.id)
        assert delivery.status == WebhookDeliveryStatus.PENDING_RETRY
        assert delivery.attempts == 0
        assert delivery.claim_token is None
