"""v1 checkout endpoints: order creation, price preview and provider return URLs."""

import logging
from typing import Dict, Optional, Union
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.v1_dependencies import (
    checkout_rate_limit,
    get_coupon_authority,
    get_current_v1_user,
    get_entitlements,
    get_providers,
)
from app.database import get_db
from app.models import User
from app.schemas_v1 import (
    CheckoutErrorResponse,
    CheckoutFreeAccessResponse,
    CheckoutQuoteResponse,
    CheckoutRedirectResponse,
    CheckoutRequest,
)
from app.services.checkout_service import CheckoutFailure, CheckoutFreeAccess, quote_checkout, start_checkout
from app.services.coupon_service import CouponAuthority
from app.services.entitlement_service import EntitlementService
from app.services.payment_service import MERCADOPAGO, PAYPAL, PaymentProvider, ProviderError
from app.services.payment_state import PaymentStatus
from app.services.reconciliation_service import reconcile_order

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter()

FAILED_STATUSES = {
    PaymentStatus.DECLINED.value,
    PaymentStatus.CANCELLED.value,
    PaymentStatus.FAILED_TO_CREATE.value,
}


def _failure_response(failure: CheckoutFailure) -> JSONResponse:
    body = CheckoutErrorResponse(error=failure.error, reason=failure.reason)
    return JSONResponse(status_code=failure.status_code, content=body.model_dump(exclude_none=True))


@router.post(
    "",
    response_model=Union[CheckoutRedirectResponse, CheckoutFreeAccessResponse],
    responses={400: {"model": CheckoutErrorResponse}, 403: {"model": CheckoutErrorResponse},
               404: {"model": CheckoutErrorResponse}, 502: {"model": CheckoutErrorResponse}},
)
async def create_checkout(
    payload: CheckoutRequest,
    current_user: User = Depends(checkout_rate_limit),
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    authority: CouponAuthority = Depends(get_coupon_authority),
    entitlements: EntitlementService = Depends(get_entitlements),
):
    result = await start_checkout(db, current_user, payload, providers, authority, entitlements)
    if isinstance(result, CheckoutFailure):
        return _failure_response(result)
    if isinstance(result, CheckoutFreeAccess):
        return CheckoutFreeAccessResponse(product_type=result.product_type, product_reference=result.product_reference)
    return CheckoutRedirectResponse(
        redirect_url=result.redirect_url,
        payment_id=result.payment_id,
        provider_order_id=result.provider_order_id,
    )


@router.post("/quote", response_model=CheckoutQuoteResponse, responses={400: {"model": CheckoutErrorResponse}})
async def preview_checkout(
    payload: CheckoutRequest,
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
    authority: CouponAuthority = Depends(get_coupon_authority),
):
    result = await quote_checkout(db, current_user, payload, authority)
    if isinstance(result, CheckoutFailure):
        return _failure_response(result)
    return CheckoutQuoteResponse(
        original_amount=result.original_amount,
        amount=result.amount,
        currency=result.currency,
        coupon_code=result.coupon_code,
        free_access=result.free_access,
    )


def _frontend_redirect(result: str, payment_id: Optional[int] = None) -> RedirectResponse:
    params = {"status": result}
    if payment_id is not None:
        params["payment_id"] = payment_id
    return RedirectResponse(f"{settings.FRONTEND_URL.rstrip('/')}/checkout/result?{urlencode(params)}", status_code=303)


async def _reconcile_return(
    db: AsyncSession,
    provider: PaymentProvider,
    order_id: Optional[str],
    authority: CouponAuthority,
    entitlements: EntitlementService,
) -> RedirectResponse:
    if not order_id:
        return _frontend_redirect("failed")
    try:
        outcome = await reconcile_order(db, provider, order_id, authority, entitlements, event_type="buyer.return")
    except ProviderError as exc:
        # The webhook will settle the order later.
        logger.error("Return reconcile of %s order %s failed: %s (body=%s)", provider.name, order_id, exc, exc.body)
        return _frontend_redirect("pending")

    if outcome.payment_id is None:
        return _frontend_redirect("failed")
    if outcome.status == PaymentStatus.APPROVED.value:
        return _frontend_redirect("success", outcome.payment_id)
    if outcome.status in FAILED_STATUSES:
        return _frontend_redirect("failed", outcome.payment_id)
    return _frontend_redirect("pending", outcome.payment_id)


@router.get("/paypal/return")
async def paypal_return(
    token: Optional[str] = Query(default=None),
    cancelled: Optional[int] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    authority: CouponAuthority = Depends(get_coupon_authority),
    entitlements: EntitlementService = Depends(get_entitlements),
):
    if cancelled:
        return _frontend_redirect("cancelled")
    return await _reconcile_return(db, providers[PAYPAL], token, authority, entitlements)


@router.get("/mercadopago/return")
async def mercadopago_return(
    preference_id: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_providers),
    authority: CouponAuthority = Depends(get_coupon_authority),
    entitlements: EntitlementService = Depends(get_entitlements),
):
    return await _reconcile_return(db, providers[MERCADOPAGO], preference_id, authority, entitlements)
