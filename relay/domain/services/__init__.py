"""
Domain Services
"""
from relay.domain.services.idempotency_service import IdempotencyService
from relay.domain.services.webhook_registry import WebhookRegistry
from relay.domain.services.delivery_store import DeliveryStore
from relay.domain.services.delivery_worker import DeliveryWorker
from relay.domain.services.incoming_gateway import IncomingWebhookGateway

__all__ = [
    "IdempotencyService",
    "WebhookRegistry",
    "DeliveryStore",
    "DeliveryWorker",
    "IncomingWebhookGateway",
]
