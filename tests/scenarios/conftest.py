"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- הרצת סבב scheduler + worker בזמן מדומה
- בניית תשובות HTTP מדומות ל-endpoint של לקוח
- חתימה על בקשות webhook נכנסות
"""
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.signatures import sign
from relay.db.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from relay.domain.services.delivery_store import ClaimedDelivery, DeliveryStore
from relay.domain.services.delivery_worker import DeliveryWorker, dispatch_due
from tests.conftest import STRIPE_SECRET, make_http_response


# ============================================================================
# Outbound
# ============================================================================

async def run_delivery_cycle(db: AsyncSession, now: datetime) -> list[WebhookDeliveryStatus | None]:
    """
    סבב אחד: ה-scheduler תופס את מה שהגיע זמנו, וה-worker שולח כל הודעה.

    במקום Celery ההודעות נאספות לרשימה ומבוצעות מיד, באותו `now`.
    """
    published: list[ClaimedDelivery] = []
    await dispatch_due(db, published.append, now=now)

    worker = DeliveryWorker(db)
    return [await worker.deliver(c.delivery_id, c.claim_token, now=now) for c in published]


async def get_delivery_state(db: AsyncSession, delivery_id: int) -> WebhookDelivery:
    return await DeliveryStore(db).get_delivery(delivery_id)


def endpoint_responses(mock_http, *status_codes: int) -> None:
    """ה-endpoint יחזיר את הסטטוסים לפי הסדר, אחד לכל ניסיון"""
    mock_http.post.side_effect = [make_http_response(code, f"status {code}") for code in status_codes]


# ============================================================================
# Inbound
# ============================================================================

def stripe_headers(body: bytes) -> dict[str, str]:
    return {"Stripe-Signature": sign(body, STRIPE_SECRET), "Content-Type": "application/json"}
