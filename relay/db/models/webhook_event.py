"""
Webhook Event Model - טבלת dedup לאירועי webhook נכנסים.

כל אירוע נרשם לפי (source, event_id). הגעה שנייה של אותו זוג לא מפעילה
עיבוד מחדש. אירועים בסטטוס error נשארים גלויים ל-retry ידני של מפעיל.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, Enum as SQLEnum

from relay.core.clock import utcnow
from relay.db.database import Base


class IncomingEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class IncomingWebhookEvent(Base):
    """רשומת dedup - אירוע שהתקבל מ-webhook חיצוני"""

    __tablename__ = "webhook_events"

    source = Column(String(50), primary_key=True)
    event_id = Column(String(200), primary_key=True)
    event_type = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(IncomingEventStatus), nullable=False, default=IncomingEventStatus.RECEIVED
    )
    error_message = Column(String(1000), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    received_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_updated", "status", "updated_at"),
    )
