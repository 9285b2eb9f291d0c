"""v1 API router."""

from fastapi import APIRouter

from app.api.v1.endpoints import checkout, payments, webhooks

router = APIRouter(prefix="/v1")
router.include_router(checkout.router, prefix="/checkout", tags=["v1-checkout"])
router.include_router(webhooks.router, prefix="/webhooks", tags=["v1-webhooks"])
router.include_router(payments.router, prefix="/payments", tags=["v1-payments"])
