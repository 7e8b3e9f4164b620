"""
Webhook Endpoint Model - outbound webhook configuration owned by a tenant.
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index

from relay.core.clock import utcnow
from relay.db.database import Base


class WebhookEndpoint(Base):
    """Outbound endpoint: HTTPS url, signing secret and event subscriptions"""

    __tablename__ = "webhook_endpoints"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=False)

    url = Column(String(2048), nullable=False)
    # מוחזר ללקוח רק ביצירה ובסיבוב: לא מוצג שוב
    secret = Column(String(128), nullable=False)
    description = Column(String(500), nullable=True)

    # Event-type values (see relay.domain.events.EventType); ignored when subscribe_all
    subscribed_events = Column(JSON, nullable=False, default=list)
    subscribe_all = Column(Boolean, nullable=False, default=False)

    enabled = Column(Boolean, nullable=False, default=True)
    # None = settings.WEBHOOK_ENDPOINT_MAX_IN_FLIGHT
    max_in_flight = Column(Integer, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_webhook_endpoints_owner_enabled", "owner_id", "enabled"),
    )
