"""
API Routes
"""
from fastapi import APIRouter

from relay.api.routes.webhook_endpoints import router as webhook_endpoints_router
from relay.api.routes.events import router as events_router
from relay.api.routes.admin import router as admin_router
from relay.api.webhooks.incoming import router as incoming_router

router = APIRouter()

router.include_router(webhook_endpoints_router, prefix="/webhook-endpoints", tags=["webhook-endpoints"])
router.include_router(events_router, prefix="/events", tags=["events"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
router.include_router(incoming_router, prefix="/webhooks/incoming", tags=["webhooks"])
