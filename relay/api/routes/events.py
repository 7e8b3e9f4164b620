"""
Business Event API Routes

Producers publish events here; one delivery row is created per subscribed
endpoint of the caller. The actual HTTP attempts happen later in the
``webhooks`` worker queue.
"""
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.dependencies.owner import get_owner_id
from relay.db.database import get_db
from relay.domain.services.delivery_store import DeliveryStore

router = APIRouter()


class EventPublish(BaseModel):
    """Schema for publishing a business event"""
    event_id: str = Field(..., min_length=1, max_length=200)
    event_type: str = Field(..., min_length=1, max_length=100)
    data: dict[str, Any] = Field(default_factory=dict)


class EventPublishResponse(BaseModel):
    event_id: str
    event_type: str
    deliveries_created: int
    delivery_ids: list[int]


@router.post(
    "",
    response_model=EventPublishResponse,
    status_code=201,
    summary="Publish a business event",
    description=(
        "Fans the event out to every enabled endpoint of the caller that subscribes to its type. "
        "Publishing the same event_id again creates no new deliveries."
    ),
    responses={
        201: {"description": "Event accepted for delivery"},
        400: {"description": "Unknown event type"},
    },
    tags=["Events"]
)
async def publish_event(
    event: EventPublish,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> EventPublishResponse:
    store = DeliveryStore(db)
    created = await store.enqueue_event(
        owner_id=owner_id,
        event_id=event.event_id,
        event_type=event.event_type,
        payload=event.data,
    )
    return EventPublishResponse(
        event_id=event.event_id,
        event_type=event.event_type,
        deliveries_created=len(created),
        delivery_ids=[d.id for d in created],
    )
