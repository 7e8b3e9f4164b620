"""
Idempotency Key Model - one row per (scope, key) for mutating API requests.

שורה נוצרת במצב locked ב-INSERT אטומי (unique על scope+key).
אחרי הצלחה היא עוברת ל-completed ושומרת את התשובה; אחרי כשלון היא נמחקת.
"""
import enum
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, DateTime, LargeBinary, JSON, Enum as SQLEnum, Index, UniqueConstraint

from relay.core.clock import utcnow
from relay.core.config import settings
from relay.db.database import Base


class IdempotencyStatus(str, enum.Enum):
    LOCKED = "locked"
    COMPLETED = "completed"


def _default_expires_at() -> datetime:
    return utcnow() + timedelta(seconds=settings.IDEMPOTENCY_KEY_TTL_SECONDS)


class IdempotencyRecord(Base):
    """In-flight or completed mutating request, keyed by client-supplied token"""

    __tablename__ = "idempotency_keys"

    id = Column(Integer, primary_key=True, index=True)

    key = Column(String(255), nullable=False)
    # owner + method + path
    scope = Column(String(600), nullable=False)
    # sha256 hex of method + path + body; never updated after insert
    request_hash = Column(String(64), nullable=False)

    status = Column(SQLEnum(IdempotencyStatus), nullable=False, default=IdempotencyStatus.LOCKED)
    lock_token = Column(String(64), nullable=True)

    # Cached response (set once on completion); body kept as raw bytes
    response_status = Column(Integer, nullable=True)
    response_body = Column(LargeBinary, nullable=True)
    response_headers = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    locked_at = Column(DateTime, nullable=True, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, default=_default_expires_at)

    __table_args__ = (
        UniqueConstraint("scope", "key", name="uq_idempotency_keys_scope_key"),
        Index("ix_idempotency_keys_expires_at", "expires_at"),
    )
