"""Checkout orchestration: price, coupon, identifiers, provider order."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Course, OrganizationMember, Payment, Plan, User
from app.services.coupon_service import (
    CouponAuthority,
    CouponAuthorityError,
    CouponFreeAccess,
    CouponRejected,
    validate_and_apply_coupon,
)
from app.services.entitlement_service import EntitlementService
from app.services.identifier_codec import (
    BillingPeriod,
    ProductType,
    PurchaseIntent,
    encode_custom_id,
    encode_invoice_id,
)
from app.services.payment_service import BuyerContact, GatewayFailure, PaymentProvider
from app.services.payment_state import PaymentStatus, transition_payment
from app.services.pricing_service import (
    PriceFailure,
    PriceFailureKind,
    PriceQuote,
    get_course_price,
    get_plan_price,
)

logger = logging.getLogger(__name__)

ORGANIZATION_BILLING_ROLES = ("admin", "owner")


@dataclass(frozen=True)
class CheckoutRedirect:
    payment_id: int
    provider_order_id: str
    redirect_url: str


@dataclass(frozen=True)
class CheckoutFreeAccess:
    product_type: ProductType
    product_reference: str


@dataclass(frozen=True)
class CheckoutFailure:
    error: str
    reason: Optional[str] = None
    status_code: int = 400


@dataclass(frozen=True)
class CheckoutQuote:
    original_amount: Decimal
    amount: Decimal
    currency: str
    coupon_code: Optional[str] = None
    free_access: bool = False


CheckoutResult = Union[CheckoutRedirect, CheckoutFreeAccess, CheckoutFailure]


@dataclass(frozen=True)
class _Priced:
    intent: PurchaseIntent
    quote: PriceQuote
    original_amount: Decimal
    title: str
    free_access: bool = False


def _price_failure(failure: PriceFailure) -> CheckoutFailure:
    status_code = 404 if failure.kind == PriceFailureKind.NOT_FOUND else 400
    return CheckoutFailure(error=failure.kind.value, reason=failure.detail or None, status_code=status_code)


async def _is_billing_member(db: AsyncSession, organization_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(OrganizationMember.id).where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
            OrganizationMember.is_active == True,
            OrganizationMember.role.in_(ORGANIZATION_BILLING_ROLES),
        )
    )
    return result.first() is not None


async def _price(
    db: AsyncSession,
    buyer: User,
    request,
    authority: CouponAuthority,
) -> Union[_Priced, CheckoutFailure]:
    product_type = ProductType(request.product_type)
    reference = request.product_reference

    if product_type == ProductType.SUBSCRIPTION:
        if request.organization_id is None or request.billing_period is None:
            return CheckoutFailure("invalid_request", "organization_id and billing_period are required")
        if not await _is_billing_member(db, request.organization_id, buyer.id):
            return CheckoutFailure("forbidden", status_code=403)

        billing_period = BillingPeriod(request.billing_period)
        priced = await get_plan_price(db, reference, request.currency, billing_period, request.provider)
        if isinstance(priced, PriceFailure):
            return _price_failure(priced)
        title = (await db.execute(select(Plan.name).where(Plan.slug == reference))).scalar_one()
        intent = PurchaseIntent(
            product_type=product_type,
            buyer_id=str(buyer.id),
            product_reference=reference,
            organization_id=str(request.organization_id),
            billing_period=billing_period,
        )
    else:
        priced = await get_course_price(db, reference, request.currency, request.provider)
        if isinstance(priced, PriceFailure):
            return _price_failure(priced)
        title = (await db.execute(select(Course.title).where(Course.slug == reference))).scalar_one()
        intent = PurchaseIntent(
            product_type=product_type,
            buyer_id=str(buyer.id),
            product_reference=reference,
            months=priced.months,
        )

    if not request.coupon_code:
        return _Priced(intent=intent, quote=priced, original_amount=priced.amount, title=title)

    outcome = await validate_and_apply_coupon(
        authority, request.coupon_code, reference, priced.amount, priced.currency, buyer.id
    )
    if isinstance(outcome, CouponRejected):
        return CheckoutFailure("coupon_rejected", outcome.reason)

    intent = replace(intent, coupon_code=outcome.coupon_code, coupon_id=outcome.coupon_id)
    if isinstance(outcome, CouponFreeAccess):
        return _Priced(
            intent=intent,
            quote=priced.with_amount(Decimal(0)),
            original_amount=priced.amount,
            title=title,
            free_access=True,
        )
    return _Priced(
        intent=intent,
        quote=priced.with_amount(outcome.final_price),
        original_amount=priced.amount,
        title=title,
    )


async def quote_checkout(
    db: AsyncSession,
    buyer: User,
    request,
    authority: CouponAuthority,
) -> Union[CheckoutQuote, CheckoutFailure]:
    """Price preview; never grants, records or contacts a provider."""
    priced = await _price(db, buyer, request, authority)
    if isinstance(priced, CheckoutFailure):
        return priced
    return CheckoutQuote(
        original_amount=priced.original_amount,
        amount=priced.quote.amount,
        currency=priced.quote.currency,
        coupon_code=priced.intent.coupon_code,
        free_access=priced.free_access,
    )


async def _grant_free_access(
    buyer: User,
    priced: _Priced,
    authority: CouponAuthority,
    entitlements: EntitlementService,
) -> CheckoutFreeAccess:
    intent = priced.intent
    if intent.product_type == ProductType.SUBSCRIPTION:
        await entitlements.activate_subscription(
            int(intent.organization_id),
            intent.product_reference,
            intent.billing_period,
            amount=Decimal(0),
            currency=priced.quote.currency,
        )
    else:
        await entitlements.grant_course_access(
            buyer.id, intent.product_reference, intent.months, source="coupon"
        )

    try:
        await authority.redeem(
            intent.coupon_id,
            intent.coupon_code,
            intent.product_reference,
            f"free:{buyer.id}:{intent.product_reference}",
        )
    except CouponAuthorityError as exc:
        logger.error("Coupon %s redemption failed on free access for user=%s: %s", intent.coupon_code, buyer.id, exc)

    logger.info("Free access to %s %s for user=%s", intent.product_type.value, intent.product_reference, buyer.id)
    return CheckoutFreeAccess(product_type=intent.product_type, product_reference=intent.product_reference)


async def start_checkout(
    db: AsyncSession,
    buyer: User,
    request,
    providers: Mapping[str, PaymentProvider],
    authority: CouponAuthority,
    entitlements: EntitlementService,
) -> CheckoutResult:
    provider = providers.get(request.provider)
    if provider is None:
        return CheckoutFailure("unsupported_provider", request.provider)

    priced = await _price(db, buyer, request, authority)
    if isinstance(priced, CheckoutFailure):
        return priced
    if priced.free_access:
        return await _grant_free_access(buyer, priced, authority, entitlements)

    intent = priced.intent
    try:
        invoice_id = encode_invoice_id(intent)
        custom_id = encode_custom_id(intent)
    except ValueError as exc:
        return CheckoutFailure("invalid_request", str(exc))

    payment = Payment(
        provider=provider.name,
        product_type=intent.product_type.value,
        buyer_id=buyer.id,
        purchase_intent=intent.to_dict(),
        invoice_id=invoice_id,
        custom_id=custom_id,
        amount=priced.quote.amount,
        currency=priced.quote.currency,
        status=PaymentStatus.CREATED.value,
    )
    db.add(payment)
    await db.flush()

    result = await provider.create_order(
        priced.quote,
        invoice_id,
        custom_id,
        BuyerContact(email=buyer.email, full_name=buyer.full_name),
        priced.title,
        intent.product_reference,
    )

    if isinstance(result, GatewayFailure):
        logger.error(
            "Provider %s refused order for payment=%s: status=%s body=%s",
            provider.name,
            payment.id,
            result.status_code,
            result.body,
        )
        await transition_payment(
            db,
            payment,
            PaymentStatus.FAILED_TO_CREATE,
            failure_reason=f"provider returned {result.status_code}",
        )
        return CheckoutFailure("payment_provider_error", status_code=502)

    payment.provider_order_id = result.order_id
    await db.flush()
    logger.info(
        "Created %s order %s for payment=%s (%s %s)",
        provider.name,
        result.order_id,
        payment.id,
        payment.amount,
        payment.currency,
    )
    return CheckoutRedirect(payment_id=payment.id, provider_order_id=result.order_id, redirect_url=result.redirect_url)
