"""
Operator API Routes - inspection and manual intervention.

All routes require ``X-Admin-API-Key``.
"""
from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.dependencies.admin_auth import require_admin_api_key
from relay.core.logging import get_logger
from relay.db.database import get_db
from relay.db.models.webhook_delivery import WebhookDeliveryStatus
from relay.db.models.webhook_event import IncomingEventStatus
from relay.domain.services.delivery_store import DeliveryStore
from relay.domain.services.incoming_gateway import IncomingWebhookGateway

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


def _iso(v: datetime | None) -> str | None:
    return v.isoformat() + "Z" if v else None


class DeliveryResponse(BaseModel):
    """Delivery row as seen by an operator"""
    id: int
    endpoint_id: int
    event_id: str
    event_type: str
    status: WebhookDeliveryStatus
    attempts: int
    next_attempt_at: datetime | None
    last_response_status: int | None
    last_response_body: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    delivered_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v: WebhookDeliveryStatus) -> str:
        return v.value

    @field_serializer("next_attempt_at", "created_at", "updated_at", "delivered_at")
    def serialize_datetime(self, v: datetime | None) -> str | None:
        return _iso(v)


class DeliveryDetailResponse(DeliveryResponse):
    payload: dict[str, Any]


class IncomingEventResponse(BaseModel):
    source: str
    event_id: str
    event_type: str | None
    status: IncomingEventStatus
    attempts: int
    error_message: str | None
    received_at: datetime
    updated_at: datetime
    processed_at: datetime | None

    model_config = {"from_attributes": True}

    @field_serializer("status")
    def serialize_status(self, v: IncomingEventStatus) -> str:
        return v.value

    @field_serializer("received_at", "updated_at", "processed_at")
    def serialize_datetime(self, v: datetime | None) -> str | None:
        return _iso(v)


# ==================== Outbound deliveries ====================

@router.get(
    "/deliveries",
    response_model=List[DeliveryResponse],
    summary="List webhook deliveries",
    description="Newest first. Filter by status (e.g. failed_exhausted) and/or endpoint.",
    tags=["Admin"]
)
async def list_deliveries(
    status: WebhookDeliveryStatus | None = Query(default=None),
    endpoint_id: int | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db)
) -> List[DeliveryResponse]:
    store = DeliveryStore(db)
    return await store.list_deliveries(status=status, endpoint_id=endpoint_id, limit=limit, offset=offset)


@router.get(
    "/deliveries/summary",
    summary="Delivery counts per status",
    tags=["Admin"]
)
async def deliveries_summary(
    db: AsyncSession = Depends(get_db)
) -> dict[str, int]:
    store = DeliveryStore(db)
    return await store.status_summary()


@router.get(
    "/deliveries/{delivery_id}",
    response_model=DeliveryDetailResponse,
    responses={404: {"description": "Delivery not found"}},
    tags=["Admin"]
)
async def get_delivery(
    delivery_id: int,
    db: AsyncSession = Depends(get_db)
) -> DeliveryDetailResponse:
    store = DeliveryStore(db)
    return await store.get_delivery(delivery_id)


@router.post(
    "/deliveries/{delivery_id}/cancel",
    response_model=DeliveryResponse,
    summary="Cancel a delivery",
    description="Only pending / pending_retry deliveries can be cancelled.",
    responses={
        404: {"description": "Delivery not found"},
        409: {"description": "Delivery is in flight or already terminal"},
    },
    tags=["Admin"]
)
async def cancel_delivery(
    delivery_id: int,
    db: AsyncSession = Depends(get_db)
) -> DeliveryResponse:
    logger.info("Cancel delivery request", extra_data={"delivery_id": delivery_id})
    store = DeliveryStore(db)
    return await store.cancel(delivery_id)


# ==================== Inbound events ====================

@router.get(
    "/incoming-events",
    response_model=List[IncomingEventResponse],
    summary="List inbound webhook events",
    tags=["Admin"]
)
async def list_incoming_events(
    status: IncomingEventStatus | None = Query(default=None),
    source: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db)
) -> List[IncomingEventResponse]:
    gateway = IncomingWebhookGateway(db)
    return await gateway.list_events(status=status, source=source, limit=limit, offset=offset)


@router.post(
    "/incoming-events/{source}/{event_id}/retry",
    response_model=IncomingEventResponse,
    summary="Retry a failed inbound event",
    description="Moves an event in 'error' back to 'received' and queues it for processing again.",
    responses={
        404: {"description": "Event not found"},
        409: {"description": "Event is not in 'error'"},
    },
    tags=["Admin"]
)
async def retry_incoming_event(
    source: str,
    event_id: str,
    db: AsyncSession = Depends(get_db)
) -> IncomingEventResponse:
    logger.info("Incoming event retry request", extra_data={"source": source, "event_id": event_id})
    gateway = IncomingWebhookGateway(db)
    return await gateway.retry_event(source, event_id)
