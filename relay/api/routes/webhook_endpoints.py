"""
Webhook Endpoint API Routes
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.dependencies.owner import get_owner_id
from relay.core.exceptions import WebhookEndpointNotFoundError
from relay.core.logging import get_logger
from relay.db.database import get_db
from relay.db.models.webhook_endpoint import WebhookEndpoint
from relay.domain.services.webhook_registry import WebhookRegistry

logger = get_logger(__name__)

router = APIRouter()


class EndpointCreate(BaseModel):
    """Schema for registering an outbound webhook endpoint"""
    url: str = Field(..., max_length=2048)
    subscribed_events: List[str] = Field(default_factory=list)
    subscribe_all: bool = False
    description: str | None = Field(default=None, max_length=500)
    max_in_flight: int | None = Field(default=None, ge=1)


CLEARABLE_FIELDS = frozenset({"description", "max_in_flight"})


class EndpointUpdate(BaseModel):
    """Partial update - only the fields sent are changed"""
    url: str | None = Field(default=None, max_length=2048)
    subscribed_events: List[str] | None = None
    subscribe_all: bool | None = None
    enabled: bool | None = None
    description: str | None = Field(default=None, max_length=500)
    max_in_flight: int | None = Field(default=None, ge=1)


class EndpointResponse(BaseModel):
    """Endpoint data without the signing secret"""
    id: int
    owner_id: str
    url: str
    subscribed_events: List[str]
    subscribe_all: bool
    enabled: bool
    description: str | None
    max_in_flight: int | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_serializer("created_at", "updated_at")
    def serialize_datetime(self, v: datetime) -> str:
        return v.isoformat() + "Z"


class EndpointWithSecretResponse(EndpointResponse):
    """Returned once, on creation and on secret rotation"""
    secret: str


class EndpointDeleteResponse(BaseModel):
    success: bool
    cancelled_deliveries: int


async def _get_owned_endpoint(registry: WebhookRegistry, endpoint_id: int, owner_id: str) -> WebhookEndpoint:
    endpoint = await registry.get_endpoint(endpoint_id)
    # endpoint של owner אחר נראה כאילו לא קיים
    if endpoint.owner_id != owner_id:
        raise WebhookEndpointNotFoundError(endpoint_id)
    return endpoint


@router.post(
    "",
    response_model=EndpointWithSecretResponse,
    status_code=201,
    summary="Register a webhook endpoint",
    description="Creates an HTTPS endpoint subscription. The signing secret is returned only in this response.",
    responses={
        201: {"description": "Endpoint created"},
        400: {"description": "Invalid URL or unknown event type"},
    },
    tags=["Webhook Endpoints"]
)
async def create_endpoint(
    data: EndpointCreate,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> EndpointWithSecretResponse:
    registry = WebhookRegistry(db)
    endpoint = await registry.create_endpoint(owner_id=owner_id, **data.model_dump())
    return EndpointWithSecretResponse.model_validate(endpoint)


@router.get(
    "",
    response_model=List[EndpointResponse],
    summary="List webhook endpoints of the caller",
    tags=["Webhook Endpoints"]
)
async def list_endpoints(
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> List[EndpointResponse]:
    registry = WebhookRegistry(db)
    return await registry.list_endpoints(owner_id)


@router.get(
    "/{endpoint_id}",
    response_model=EndpointResponse,
    responses={404: {"description": "Endpoint not found"}},
    tags=["Webhook Endpoints"]
)
async def get_endpoint(
    endpoint_id: int,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> EndpointResponse:
    registry = WebhookRegistry(db)
    return await _get_owned_endpoint(registry, endpoint_id, owner_id)


@router.patch(
    "/{endpoint_id}",
    response_model=EndpointResponse,
    summary="Update a webhook endpoint",
    description="Change URL, subscriptions, description, concurrency cap, or enable/disable the endpoint.",
    tags=["Webhook Endpoints"]
)
async def update_endpoint(
    endpoint_id: int,
    data: EndpointUpdate,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> EndpointResponse:
    registry = WebhookRegistry(db)
    await _get_owned_endpoint(registry, endpoint_id, owner_id)
    # null מנקה רק שדות שמותר להם להיות ריקים; בשאר השדות null מתעלמים ממנו
    changes = {
        name: value
        for name, value in data.model_dump(exclude_unset=True).items()
        if value is not None or name in CLEARABLE_FIELDS
    }
    logger.info(
        "Updating webhook endpoint",
        extra_data={"endpoint_id": endpoint_id, "fields": sorted(changes)}
    )
    return await registry.update_endpoint(endpoint_id, **changes)


@router.post(
    "/{endpoint_id}/rotate-secret",
    response_model=EndpointWithSecretResponse,
    summary="Rotate the signing secret",
    tags=["Webhook Endpoints"]
)
async def rotate_secret(
    endpoint_id: int,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> EndpointWithSecretResponse:
    registry = WebhookRegistry(db)
    await _get_owned_endpoint(registry, endpoint_id, owner_id)
    endpoint = await registry.rotate_secret(endpoint_id)
    return EndpointWithSecretResponse.model_validate(endpoint)


@router.delete(
    "/{endpoint_id}",
    response_model=EndpointDeleteResponse,
    summary="Delete a webhook endpoint",
    description="Disables the endpoint and cancels deliveries that have not been sent yet.",
    tags=["Webhook Endpoints"]
)
async def delete_endpoint(
    endpoint_id: int,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db)
) -> EndpointDeleteResponse:
    registry = WebhookRegistry(db)
    await _get_owned_endpoint(registry, endpoint_id, owner_id)
    cancelled = await registry.delete_endpoint(endpoint_id)
    return EndpointDeleteResponse(success=True, cancelled_deliveries=cancelled)
