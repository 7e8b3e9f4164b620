"""
Database Models
"""
from relay.db.models.idempotency_key import IdempotencyRecord, IdempotencyStatus
from relay.db.models.webhook_endpoint import WebhookEndpoint
from relay.db.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from relay.db.models.webhook_event import IncomingWebhookEvent, IncomingEventStatus

__all__ = [
    "IdempotencyRecord",
    "IdempotencyStatus",
    "WebhookEndpoint",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
    "IncomingWebhookEvent",
    "IncomingEventStatus",
]
