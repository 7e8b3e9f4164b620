"""
Webhook Delivery Model - durable queue of outbound delivery attempts.

Lifecycle:
    pending → in_flight → delivered
                        → pending_retry → in_flight → ... → failed_exhausted
Any non-terminal row can be cancelled by an operator.
"""
import enum

from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON, ForeignKey, Index, UniqueConstraint,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from relay.core.clock import utcnow
from relay.db.database import Base


class WebhookDeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    PENDING_RETRY = "pending_retry"
    FAILED_EXHAUSTED = "failed_exhausted"
    CANCELLED = "cancelled"


TERMINAL_DELIVERY_STATUSES = frozenset({
    WebhookDeliveryStatus.DELIVERED,
    WebhookDeliveryStatus.FAILED_EXHAUSTED,
    WebhookDeliveryStatus.CANCELLED,
})

CLAIMABLE_DELIVERY_STATUSES = frozenset({
    WebhookDeliveryStatus.PENDING,
    WebhookDeliveryStatus.PENDING_RETRY,
})


class WebhookDelivery(Base):
    """One delivery per (endpoint, event)"""

    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    endpoint_id = Column(
        Integer, ForeignKey("webhook_endpoints.id", ondelete="CASCADE"), nullable=False
    )

    # Dedup key: the originating business event id
    event_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(WebhookDeliveryStatus), nullable=False, default=WebhookDeliveryStatus.PENDING
    )
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True, default=utcnow)

    # Optimistic concurrency: every transition bumps version; finalization
    # requires the claim_token handed out by the claim that sent the row in_flight
    version = Column(Integer, nullable=False, default=0)
    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    # Debugging info for operators (truncated)
    last_response_status = Column(Integer, nullable=True)
    last_response_body = Column(Text, nullable=True)
    last_error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    delivered_at = Column(DateTime, nullable=True)

    endpoint = relationship("WebhookEndpoint", lazy="raise")

    __table_args__ = (
        UniqueConstraint("endpoint_id", "event_id", name="uq_webhook_deliveries_endpoint_event"),
        Index("ix_webhook_deliveries_status_next_attempt", "status", "next_attempt_at"),
        Index("ix_webhook_deliveries_endpoint_status", "endpoint_id", "status"),
    )
