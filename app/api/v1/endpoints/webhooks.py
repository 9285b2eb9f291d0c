"""Inbound provider notifications."""

import json
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.v1_dependencies import get_coupon_authority, get_entitlements, get_providers, get_webhook_verifiers
from app.database import get_db
from app.schemas_v1 import WebhookAck
from app.services.coupon_service import CouponAuthority
from app.services.entitlement_service import EntitlementService
from app.services.payment_service import MERCADOPAGO, PAYPAL, PaymentProvider, ProviderError
from app.services.reconciliation_service import handle_notification
from app.services.webhook_verification import WebhookNotification, WebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter()


async def _receive(
    provider_name: str,
    request: Request,
    db: AsyncSession,
    providers: Dict[str, PaymentProvider],
    verifiers: Dict[str, WebhookVerifier],
    authority: CouponAuthority,
    entitlements: EntitlementService,
):
    body = await request.body()
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None

    notification = WebhookNotification.build(request.headers, request.query_params, body, payload)
    try:
        outcome = await handle_notification(
            db, providers[provider_name], verifiers[provider_name], notification, authority, entitlements
        )
    except ProviderError as exc:
        logger.error(
            "%s webhook deferred, provider unreachable: %s (status=%s body=%s)",
            provider_name,
            exc,
            exc.status_code,
            exc.body,
        )
        await db.rollback()
        return JSONResponse(status_code=503, content=WebhookAck(received=False).model_dump())

    logger.info("%s webhook processed: %s (payment=%s)", provider_name, outcome.outcome, outcome.payment_id)
    return WebhookAck(received=True)


@router.post("/paypal", response_model=WebhookAck)
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    verifiers: Dict[str, WebhookVerifier] = Depends(get_webhook_verifiers),
    authority: CouponAuthority = Depends(get_coupon_authority),
    entitlements: EntitlementService = Depends(get_entitlements),
):
    return await _receive(PAYPAL, request, db, providers, verifiers, authority, entitlements)


@router.post("/mercadopago", response_model=WebhookAck)
async def mercadopago_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    verifiers: Dict[str, WebhookVerifier] = Depends(get_webhook_verifiers),
    authority: CouponAuthority = Depends(get_coupon_authority),
    entitlements: EntitlementService = Depends(get_entitlements),
):
    return await _receive(MERCADOPAGO, request, db, providers, verifiers, authority, entitlements)
