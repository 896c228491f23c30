"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.checkout import router as checkout_router
from app.api.webhooks.payments import router as payments_router
from app.api.webhooks.whatsapp import router as whatsapp_router

router = APIRouter()

router.include_router(whatsapp_router, prefix="/webhooks/whatsapp", tags=["Webhooks"])
router.include_router(payments_router, prefix="/webhooks/payments", tags=["Webhooks"])
router.include_router(checkout_router, prefix="/checkout", tags=["Checkout"])
router.include_router(admin_router, prefix="/admin", tags=["Admin"])
