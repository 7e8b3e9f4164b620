"""
Webhook Registry - outbound endpoint configuration.

Endpoints belong to an owner (tenant). The signing secret is generated here
and handed back to the caller only from create_endpoint / rotate_secret.
"""
from __future__ import annotations

from typing import Iterable, List
from urllib.parse import urlparse

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import utcnow
from relay.core.exceptions import ValidationException, WebhookEndpointNotFoundError
from relay.core.logging import get_logger
from relay.core.signatures import generate_secret
from relay.db.models.webhook_delivery import (
    WebhookDelivery,
    WebhookDeliveryStatus,
    TERMINAL_DELIVERY_STATUSES,
)
from relay.db.models.webhook_endpoint import WebhookEndpoint
from relay.domain.events import parse_event_types

logger = get_logger(__name__)

_UNSET = object()


def validate_endpoint_url(url: str) -> str:
    """Endpoints must be absolute HTTPS URLs with a host"""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme != "https":
        raise ValidationException("Webhook URL must use https", field="url")
    if not parsed.hostname:
        raise ValidationException("Webhook URL must include a host", field="url")
    if len(url) > 2048:
        raise ValidationException("Webhook URL is too long", field="url")
    return url


def _validate_subscription(subscribed_events: Iterable[str] | None, subscribe_all: bool) -> list[str]:
    try:
        events = [e.value for e in parse_event_types(subscribed_events or [])]
    except ValueError as exc:
        raise ValidationException(str(exc), field="subscribed_events") from None
    if not events and not subscribe_all:
        raise ValidationException(
            "Subscribe to at least one event type or set subscribe_all",
            field="subscribed_events",
        )
    return events


def _validate_max_in_flight(max_in_flight: int | None) -> int | None:
    if max_in_flight is not None and max_in_flight < 1:
        raise ValidationException("max_in_flight must be at least 1", field="max_in_flight")
    return max_in_flight


class WebhookRegistry:
    """Service for managing outbound webhook endpoints"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_endpoint(
        self,
        owner_id: str,
        url: str,
        subscribed_events: Iterable[str] | None = None,
        subscribe_all: bool = False,
        description: str | None = None,
        max_in_flight: int | None = None,
    ) -> WebhookEndpoint:
        """Create an enabled endpoint with a fresh signing secret"""
        endpoint = WebhookEndpoint(
            owner_id=owner_id,
            url=validate_endpoint_url(url),
            secret=generate_secret(),
            description=description,
            subscribed_events=_validate_subscription(subscribed_events, subscribe_all),
            subscribe_all=subscribe_all,
            enabled=True,
            max_in_flight=_validate_max_in_flight(max_in_flight),
        )
        self.db.add(endpoint)
        await self.db.commit()
        await self.db.refresh(endpoint)

        logger.info(
            "Webhook endpoint created",
            extra_data={
                "endpoint_id": endpoint.id,
                "owner_id": owner_id,
                "subscribe_all": subscribe_all,
                "subscribed_events": endpoint.subscribed_events,
            },
        )
        return endpoint

    async def get_endpoint(self, endpoint_id: int) -> WebhookEndpoint:
        result = await self.db.execute(
            select(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id)
        )
        endpoint = result.scalar_one_or_none()
        if not endpoint:
            raise WebhookEndpointNotFoundError(endpoint_id)
        return endpoint

    async def list_endpoints(self, owner_id: str | None = None) -> List[WebhookEndpoint]:
        query = select(WebhookEndpoint).order_by(WebhookEndpoint.id)
        if owner_id is not None:
            query = query.where(WebhookEndpoint.owner_id == owner_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def update_endpoint(
        self,
        endpoint_id: int,
        *,
        url=_UNSET,
        subscribed_events=_UNSET,
        subscribe_all=_UNSET,
        enabled=_UNSET,
        description=_UNSET,
        max_in_flight=_UNSET,
    ) -> WebhookEndpoint:
        """Partial update; fields left unset keep their value"""
        endpoint = await self.get_endpoint(endpoint_id)

        if url is not _UNSET:
            endpoint.url = validate_endpoint_url(url)
        if subscribed_events is not _UNSET or subscribe_all is not _UNSET:
            new_all = endpoint.subscribe_all if subscribe_all is _UNSET else bool(subscribe_all)
            new_events = endpoint.subscribed_events if subscribed_events is _UNSET else subscribed_events
            endpoint.subscribed_events = _validate_subscription(new_events, new_all)
            endpoint.subscribe_all = new_all
        if description is not _UNSET:
            endpoint.description = description
        if max_in_flight is not _UNSET:
            endpoint.max_in_flight = _validate_max_in_flight(max_in_flight)
        if enabled is not _UNSET and bool(enabled) != endpoint.enabled:
            endpoint.enabled = bool(enabled)
            logger.info(
                "Webhook endpoint " + ("enabled" if endpoint.enabled else "disabled"),
                extra_data={"endpoint_id": endpoint.id},
            )

        endpoint.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(endpoint)
        return endpoint

    async def set_enabled(self, endpoint_id: int, enabled: bool) -> WebhookEndpoint:
        return await self.update_endpoint(endpoint_id, enabled=enabled)

    async def rotate_secret(self, endpoint_id: int) -> WebhookEndpoint:
        """
        Replace the signing secret.

        Deliveries already in flight were signed with the old secret; every
        attempt from now on uses the new one.
        """
        endpoint = await self.get_endpoint(endpoint_id)
        endpoint.secret = generate_secret()
        endpoint.updated_at = utcnow()
        await self.db.commit()
        await self.db.refresh(endpoint)
        logger.info("Webhook secret rotated", extra_data={"endpoint_id": endpoint.id})
        return endpoint

    async def delete_endpoint(self, endpoint_id: int) -> int:
        """
        Disable the endpoint and cancel its non-terminal deliveries.

        The row is kept so delivery history stays attached to it. Returns the
        number of deliveries cancelled.
        """
        endpoint = await self.get_endpoint(endpoint_id)
        endpoint.enabled = False
        endpoint.updated_at = utcnow()

        # in_flight לא מבוטלים: הם יסתיימו לבד (timeout) ויחזרו ל-pending_retry
        result = await self.db.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.endpoint_id == endpoint_id,
                WebhookDelivery.status.not_in(
                    list(TERMINAL_DELIVERY_STATUSES) + [WebhookDeliveryStatus.IN_FLIGHT]
                ),
            )
            .values(
                status=WebhookDeliveryStatus.CANCELLED,
                next_attempt_at=None,
                version=WebhookDelivery.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            "Webhook endpoint deleted",
            extra_data={"endpoint_id": endpoint_id, "cancelled_deliveries": result.rowcount},
        )
        return result.rowcount
