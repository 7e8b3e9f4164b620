"""
Delivery Worker - one HTTP attempt per claimed delivery.

The scheduler (``dispatch_due``) claims due rows and hands each
(delivery_id, claim_token) pair to a publisher, normally the Celery
``deliver_webhook`` task. The worker (``DeliveryWorker.deliver``) signs and
POSTs the event, then records the outcome through DeliveryStore. Failures
never propagate to whoever published the business event.
"""
from __future__ import annotations

import json
import time
from datetime import datetime
from typing import Awaitable, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import utcnow
from relay.core.config import settings
from relay.core.exceptions import DeliveryExhaustedError, TransientDeliveryError
from relay.core.logging import get_logger, log_async_operation
from relay.core.signatures import sign
from relay.db.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from relay.domain.services.delivery_store import ClaimedDelivery, DeliveryStore

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_TYPE_HEADER = "X-Webhook-Event-Type"
EVENT_ID_HEADER = "X-Webhook-Event-Id"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"

Publisher = Callable[[ClaimedDelivery], Awaitable[None] | None]


def build_delivery_body(delivery: WebhookDelivery) -> bytes:
    """Canonical JSON body: the bytes that are signed are the bytes that are sent"""
    envelope = {
        "id": delivery.event_id,
        "type": delivery.event_type,
        "data": delivery.payload,
    }
    return json.dumps(
        envelope, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def build_delivery_headers(
    delivery: WebhookDelivery,
    body: bytes,
    secret: str,
    timestamp: int | None = None,
) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": settings.WEBHOOK_USER_AGENT,
        SIGNATURE_HEADER: sign(body, secret, timestamp),
        EVENT_TYPE_HEADER: delivery.event_type,
        EVENT_ID_HEADER: delivery.event_id,
        DELIVERY_ID_HEADER: str(delivery.id),
    }


class DeliveryWorker:
    """Performs the HTTP attempt for one in-flight delivery"""

    def __init__(self, db: AsyncSession, *, timeout: float | None = None):
        self.db = db
        self.store = DeliveryStore(db)
        self.timeout = timeout or settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException:
            raise TransientDeliveryError(f"Timed out after {self.timeout}s") from None
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(f"Network error: {type(exc).__name__}: {exc}") from None

    @log_async_operation("webhook delivery attempt")
    async def deliver(
        self,
        delivery_id: int,
        claim_token: str,
        now: datetime | None = None,
    ) -> WebhookDeliveryStatus | None:
        """
        Send one claimed delivery and record the result.

        Returns the delivery's new status, or None when the claim is no longer
        current (the message was duplicated by the broker or the reaper took
        the row back). Never raises for endpoint-side failures.
        """
        claimed = await self.store.get_claimed(delivery_id, claim_token)
        if claimed is None:
            logger.info(
                "Skipping delivery: claim is no longer current",
                extra_data={"delivery_id": delivery_id},
            )
            return None
        delivery, endpoint = claimed

        # בדיקה חוזרת ממש לפני השליחה: endpoint שהושבת לא מקבל כלום
        if not endpoint.enabled:
            await self.store.return_to_retry(delivery_id, claim_token, now=now)
            logger.info(
                "Endpoint disabled, delivery returned to retry queue",
                extra_data={"delivery_id": delivery_id, "endpoint_id": endpoint.id},
            )
            return WebhookDeliveryStatus.PENDING_RETRY

        body = build_delivery_body(delivery)
        headers = build_delivery_headers(delivery, body, endpoint.secret, int(time.time()))

        try:
            response = await self._post(endpoint.url, body, headers)
            if not 200 <= response.status_code < 300:
                raise TransientDeliveryError.from_response(
                    response, max_response_chars=settings.WEBHOOK_RESPONSE_BODY_MAX_CHARS
                )
        except TransientDeliveryError as exc:
            return await self._record_failure(delivery, claim_token, exc, now)

        await self.store.record_success(
            delivery_id, claim_token, response.status_code, response.text, now=now
        )
        logger.info(
            "Webhook delivered",
            extra_data={
                "delivery_id": delivery_id,
                "endpoint_id": endpoint.id,
                "event_id": delivery.event_id,
                "response_status": response.status_code,
                "attempt": delivery.attempts + 1,
            },
        )
        return WebhookDeliveryStatus.DELIVERED

    async def _record_failure(
        self,
        delivery: WebhookDelivery,
        claim_token: str,
        exc: TransientDeliveryError,
        now: datetime | None,
    ) -> WebhookDeliveryStatus | None:
        status = await self.store.record_failure(
            delivery.id,
            claim_token,
            exc.message,
            response_status=exc.response_status,
            response_body=exc.response_body,
            now=now,
        )
        attempt = delivery.attempts + 1

        if status is WebhookDeliveryStatus.FAILED_EXHAUSTED:
            exhausted = DeliveryExhaustedError(delivery.id, attempt)
            logger.error(
                exhausted.message,
                extra_data={
                    **exhausted.details,
                    "endpoint_id": delivery.endpoint_id,
                    "event_id": delivery.event_id,
                    "last_error": exc.message,
                },
            )
        elif status is WebhookDeliveryStatus.PENDING_RETRY:
            logger.warning(
                "Webhook delivery attempt failed, will retry",
                extra_data={
                    "delivery_id": delivery.id,
                    "endpoint_id": delivery.endpoint_id,
                    "attempt": attempt,
                    "response_status": exc.response_status,
                    "error": exc.message,
                },
            )
        return status


async def dispatch_due(
    db: AsyncSession,
    publish: Publisher,
    limit: int | None = None,
    now: datetime | None = None,
) -> int:
    """
    Claim due deliveries and publish one message per claim.

    If publishing fails (broker down) the claim is handed back without
    counting an attempt, so the next scheduler tick picks it up again.
    """
    store = DeliveryStore(db)
    claimed = await store.claim_due(limit or settings.WEBHOOK_DISPATCH_BATCH_SIZE, now=now)

    published = 0
    for claim in claimed:
        try:
            result = publish(claim)
            if result is not None:
                await result
        except Exception as exc:
            logger.error(
                "Failed to publish delivery task",
                extra_data={"delivery_id": claim.delivery_id, "error": str(exc)},
                exc_info=True,
            )
            await store.return_to_retry(claim.delivery_id, claim.claim_token, now=now)
            continue
        published += 1
    return published
