"""
Delivery Store - durable queue of outbound webhook deliveries.

Follows the transactional outbox idea: producers only INSERT rows, workers
move them through the state machine. Every transition is a compare-and-set
UPDATE (status + version, or status + claim_token), so several schedulers and
workers can run against the same table without any shared in-process lock.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import utcnow
from relay.core.config import settings
from relay.core.exceptions import (
    DeliveryStatusError,
    ValidationException,
    WebhookDeliveryNotFoundError,
)
from relay.core.logging import get_logger
from relay.db.models.webhook_delivery import (
    WebhookDelivery,
    WebhookDeliveryStatus,
    CLAIMABLE_DELIVERY_STATUSES,
)
from relay.db.models.webhook_endpoint import WebhookEndpoint
from relay.domain.events import EventType, endpoint_matches, parse_event_type

logger = get_logger(__name__)


def backoff_delay(attempts: int, schedule: Sequence[int] | None = None) -> timedelta:
    """
    Delay before the next attempt after ``attempts`` attempts have been made.

    attempts=1 → schedule[0] (1m), attempts=2 → schedule[1] (5m), ...
    Past the end of the schedule the last entry is reused.
    """
    schedule = schedule or settings.WEBHOOK_BACKOFF_SCHEDULE_SECONDS
    index = min(max(attempts, 1), len(schedule)) - 1
    return timedelta(seconds=schedule[index])


def truncate_body(body: str | None, limit: int | None = None) -> str | None:
    if body is None:
        return None
    limit = limit or settings.WEBHOOK_RESPONSE_BODY_MAX_CHARS
    return body[:limit]


@dataclass(frozen=True)
class ClaimedDelivery:
    delivery_id: int
    claim_token: str


class DeliveryStore:
    """Service for the webhook_deliveries table"""

    def __init__(self, db: AsyncSession, *, max_attempts: int | None = None):
        self.db = db
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS

    # ==================== Producer side ====================

    async def enqueue_event(
        self,
        owner_id: str,
        event_id: str,
        event_type: EventType | str,
        payload: dict[str, Any],
        now: datetime | None = None,
    ) -> List[WebhookDelivery]:
        """
        Create one pending delivery per enabled, subscribed endpoint of the owner.

        Publishing the same event_id twice does not create duplicates: the
        (endpoint_id, event_id) unique constraint turns the second insert into
        a no-op. Returns only the deliveries created by this call.
        """
        try:
            event_type = parse_event_type(event_type)
        except ValueError as exc:
            raise ValidationException(str(exc), field="event_type") from None
        if not event_id:
            raise ValidationException("event_id is required", field="event_id")

        now = now or utcnow()
        result = await self.db.execute(
            select(WebhookEndpoint).where(
                WebhookEndpoint.owner_id == owner_id,
                WebhookEndpoint.enabled.is_(True),
            )
        )
        endpoints = [
            ep for ep in result.scalars().all()
            if endpoint_matches(ep.subscribe_all, ep.subscribed_events, event_type)
        ]

        created: list[WebhookDelivery] = []
        for endpoint in endpoints:
            delivery = WebhookDelivery(
                endpoint_id=endpoint.id,
                event_id=event_id,
                event_type=event_type.value,
                payload=payload,
                status=WebhookDeliveryStatus.PENDING,
                attempts=0,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            try:
                async with self.db.begin_nested():
                    self.db.add(delivery)
            except IntegrityError:
                logger.info(
                    "Delivery already enqueued for event",
                    extra_data={"endpoint_id": endpoint.id, "event_id": event_id},
                )
                continue
            created.append(delivery)

        await self.db.commit()

        logger.info(
            "Event enqueued for webhook delivery",
            extra_data={
                "owner_id": owner_id,
                "event_id": event_id,
                "event_type": event_type.value,
                "matched_endpoints": len(endpoints),
                "created_deliveries": len(created),
            },
        )
        return created

    # ==================== Scheduler side ====================

    def _due_rows_query(self, limit: int, now: datetime):
        """
        Due rows, at most ``cap - in_flight`` per endpoint, oldest first.

        The per-endpoint cut happens before LIMIT, so a backlog on one capped
        endpoint cannot fill the whole batch and hide other endpoints' rows.
        """
        in_flight = (
            select(
                WebhookDelivery.endpoint_id.label("endpoint_id"),
                func.count().label("in_flight"),
            )
            .where(WebhookDelivery.status == WebhookDeliveryStatus.IN_FLIGHT)
            .group_by(WebhookDelivery.endpoint_id)
            .subquery()
        )
        cap = func.coalesce(WebhookEndpoint.max_in_flight, settings.WEBHOOK_ENDPOINT_MAX_IN_FLIGHT)

        ranked = (
            select(
                WebhookDelivery.id,
                WebhookDelivery.status,
                WebhookDelivery.version,
                WebhookDelivery.endpoint_id,
                WebhookDelivery.next_attempt_at,
                (cap - func.coalesce(in_flight.c.in_flight, 0)).label("free_slots"),
                func.row_number()
                .over(
                    partition_by=WebhookDelivery.endpoint_id,
                    order_by=(WebhookDelivery.next_attempt_at, WebhookDelivery.id),
                )
                .label("slot"),
            )
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.endpoint_id)
            .outerjoin(in_flight, in_flight.c.endpoint_id == WebhookDelivery.endpoint_id)
            .where(
                WebhookDelivery.status.in_(list(CLAIMABLE_DELIVERY_STATUSES)),
                WebhookDelivery.next_attempt_at <= now,
                WebhookEndpoint.enabled.is_(True),
            )
            .subquery()
        )

        return (
            select(ranked.c.id, ranked.c.status, ranked.c.version, ranked.c.endpoint_id)
            .where(ranked.c.slot <= ranked.c.free_slots)
            .order_by(ranked.c.next_attempt_at, ranked.c.id)
            .limit(limit)
        )

    async def claim_due(self, limit: int = 100, now: datetime | None = None) -> List[ClaimedDelivery]:
        """
        Move due deliveries to in_flight and return their claim tokens.

        A row is due when it is pending/pending_retry, next_attempt_at ≤ now and
        its endpoint is enabled. Each claim is a CAS on (id, status, version):
        if another scheduler got there first the row is simply skipped.
        Endpoints already at their in-flight cap contribute no rows until a
        slot frees up.
        """
        now = now or utcnow()
        result = await self.db.execute(self._due_rows_query(limit, now))
        candidates = result.all()

        claimed: list[ClaimedDelivery] = []
        for row in candidates:
            token = uuid.uuid4().hex
            update_result = await self.db.execute(
                update(WebhookDelivery)
                .where(
                    WebhookDelivery.id == row.id,
                    WebhookDelivery.status == row.status,
                    WebhookDelivery.version == row.version,
                )
                .values(
                    status=WebhookDeliveryStatus.IN_FLIGHT,
                    version=WebhookDelivery.version + 1,
                    claim_token=token,
                    claimed_at=now,
                    next_attempt_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount == 1:
                claimed.append(ClaimedDelivery(delivery_id=row.id, claim_token=token))

        await self.db.commit()

        if claimed:
            logger.info(
                "Claimed due webhook deliveries",
                extra_data={"claimed": len(claimed), "candidates": len(candidates)},
            )
        return claimed

    # ==================== Worker side ====================

    async def get_claimed(
        self, delivery_id: int, claim_token: str
    ) -> tuple[WebhookDelivery, WebhookEndpoint] | None:
        """The in-flight row together with its endpoint, if the claim is still current"""
        result = await self.db.execute(
            select(WebhookDelivery, WebhookEndpoint)
            .join(WebhookEndpoint, WebhookEndpoint.id == WebhookDelivery.endpoint_id)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == WebhookDeliveryStatus.IN_FLIGHT,
                WebhookDelivery.claim_token == claim_token,
            )
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    def _claimed_row(self, delivery_id: int, claim_token: str):
        return (
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status == WebhookDeliveryStatus.IN_FLIGHT,
            WebhookDelivery.claim_token == claim_token,
        )

    async def record_success(
        self,
        delivery_id: int,
        claim_token: str,
        response_status: int,
        response_body: str | None,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(*self._claimed_row(delivery_id, claim_token))
            .values(
                status=WebhookDeliveryStatus.DELIVERED,
                attempts=WebhookDelivery.attempts + 1,
                version=WebhookDelivery.version + 1,
                claim_token=None,
                next_attempt_at=None,
                last_response_status=response_status,
                last_response_body=truncate_body(response_body),
                last_error=None,
                delivered_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def record_failure(
        self,
        delivery_id: int,
        claim_token: str,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
        now: datetime | None = None,
    ) -> WebhookDeliveryStatus | None:
        """
        Count a failed attempt and schedule the next one (or give up).

        Returns the new status, or None if the claim is no longer current.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(WebhookDelivery.attempts).where(*self._claimed_row(delivery_id, claim_token))
        )
        attempts = result.scalar_one_or_none()
        if attempts is None:
            return None

        attempts += 1
        if attempts >= self.max_attempts:
            new_status = WebhookDeliveryStatus.FAILED_EXHAUSTED
            next_attempt_at = None
        else:
            new_status = WebhookDeliveryStatus.PENDING_RETRY
            next_attempt_at = now + backoff_delay(attempts)

        update_result = await self.db.execute(
            update(WebhookDelivery)
            .where(*self._claimed_row(delivery_id, claim_token), WebhookDelivery.attempts == attempts - 1)
            .values(
                status=new_status,
                attempts=attempts,
                version=WebhookDelivery.version + 1,
                claim_token=None,
                next_attempt_at=next_attempt_at,
                last_response_status=response_status,
                last_response_body=truncate_body(response_body),
                last_error=error[:1000],
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if update_result.rowcount != 1:
            return None
        return new_status

    async def return_to_retry(
        self,
        delivery_id: int,
        claim_token: str,
        now: datetime | None = None,
    ) -> bool:
        """Put a claimed delivery back without counting an attempt (endpoint disabled)"""
        now = now or utcnow()
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(*self._claimed_row(delivery_id, claim_token))
            .values(
                status=WebhookDeliveryStatus.PENDING_RETRY,
                version=WebhookDelivery.version + 1,
                claim_token=None,
                next_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def reap_stale_in_flight(self, now: datetime | None = None) -> int:
        """
        Count abandoned in-flight claims as failed attempts.

        A claim older than the HTTP timeout plus a grace period means the
        worker died or the broker lost the message; the attempt's outcome is
        unknown, so it goes through the normal backoff path.
        """
        now = now or utcnow()
        threshold = now - timedelta(
            seconds=settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS + settings.WEBHOOK_IN_FLIGHT_GRACE_SECONDS
        )
        result = await self.db.execute(
            select(WebhookDelivery.id, WebhookDelivery.claim_token).where(
                WebhookDelivery.status == WebhookDeliveryStatus.IN_FLIGHT,
                WebhookDelivery.claimed_at < threshold,
            )
        )
        reaped = 0
        for delivery_id, claim_token in result.all():
            status = await self.record_failure(
                delivery_id, claim_token, "worker lost (in-flight claim expired)", now=now
            )
            if status is not None:
                reaped += 1
                logger.warning(
                    "Reaped stale in-flight delivery",
                    extra_data={"delivery_id": delivery_id, "new_status": status.value},
                )
        return reaped

    # ==================== Operator side ====================

    async def get_delivery(self, delivery_id: int) -> WebhookDelivery:
        result = await self.db.execute(
            select(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .execution_options(populate_existing=True)
        )
        delivery = result.scalar_one_or_none()
        if not delivery:
            raise WebhookDeliveryNotFoundError(delivery_id)
        return delivery

    async def list_deliveries(
        self,
        status: WebhookDeliveryStatus | None = None,
        endpoint_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WebhookDelivery]:
        query = select(WebhookDelivery).order_by(WebhookDelivery.id.desc())
        if status is not None:
            query = query.where(WebhookDelivery.status == status)
        if endpoint_id is not None:
            query = query.where(WebhookDelivery.endpoint_id == endpoint_id)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def status_summary(self) -> dict[str, int]:
        result = await self.db.execute(
            select(WebhookDelivery.status, func.count()).group_by(WebhookDelivery.status)
        )
        summary = {status.value: 0 for status in WebhookDeliveryStatus}
        for status, count in result.all():
            summary[WebhookDeliveryStatus(status).value] = count
        summary["total"] = sum(summary.values())
        return summary

    async def cancel(self, delivery_id: int, now: datetime | None = None) -> WebhookDelivery:
        """Cancel a delivery that is waiting for its next attempt"""
        delivery = await self.get_delivery(delivery_id)
        if delivery.status not in CLAIMABLE_DELIVERY_STATUSES:
            raise DeliveryStatusError(
                delivery_id,
                delivery.status.value,
                sorted(s.value for s in CLAIMABLE_DELIVERY_STATUSES),
            )

        now = now or utcnow()
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == delivery.status,
                WebhookDelivery.version == delivery.version,
            )
            .values(
                status=WebhookDeliveryStatus.CANCELLED,
                version=WebhookDelivery.version + 1,
                next_attempt_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            # נתפס על ידי worker בין הקריאה לעדכון
            current = await self.get_delivery(delivery_id)
            raise DeliveryStatusError(
                delivery_id,
                current.status.value,
                sorted(s.value for s in CLAIMABLE_DELIVERY_STATUSES),
            )

        logger.info("Webhook delivery cancelled", extra_data={"delivery_id": delivery_id})
        return await self.get_delivery(delivery_id)
