"""
Incoming Webhook Handler - entry point for third-party callbacks.

The raw body is read before any parsing: signatures are computed over the
exact bytes the sender signed.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from relay.db.database import get_db
from relay.domain.services.incoming_gateway import IncomingWebhookGateway

router = APIRouter()


@router.post(
    "/{source}",
    summary="Receive an inbound webhook",
    description=(
        "Verifies the source's signature, records the event once per (source, event id) "
        "and queues it for processing. Duplicates are acknowledged without reprocessing."
    ),
    responses={
        200: {"description": "Accepted or duplicate"},
        400: {"description": "Invalid signature or payload"},
        404: {"description": "Unknown source"},
    },
    tags=["Webhooks"]
)
async def receive_webhook(
    source: str,
    request: Request,
    db: AsyncSession = Depends(get_db)
) -> dict[str, str]:
    raw_body = await request.body()
    gateway = IncomingWebhookGateway(db)
    result = await gateway.receive(source, raw_body, request.headers)
    return result.to_ack()
