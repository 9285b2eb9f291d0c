from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.models import CourseEnrollment, OrganizationSubscription, Payment
from app.schemas_v1 import CheckoutRequest
from app.services.checkout_service import (
    CheckoutFailure,
    CheckoutFreeAccess,
    CheckoutQuote,
    CheckoutRedirect,
    quote_checkout,
    start_checkout,
)
from app.services.payment_service import GatewayFailure


def course_request(**overrides):
    data = {"product_type": "course", "product_reference": "archicad-101", "currency": "USD", "provider": "paypal"}
    data.update(overrides)
    return CheckoutRequest(**data)


def plan_request(organization_id, **overrides):
    data = {
        "product_type": "subscription",
        "product_reference": "pro",
        "currency": "USD",
        "provider": "paypal",
        "organization_id": organization_id,
        "billing_period": "monthly",
    }
    data.update(overrides)
    return CheckoutRequest(**data)


async def _count(db, model):
    return (await db.execute(select(func.count(model.id)))).scalar_one()


@pytest.mark.asyncio
async def test_course_checkout_creates_record_and_provider_order(db, catalog, providers, coupons, entitlements, paypal):
    buyer = catalog["buyer"]

    result = await start_checkout(db, buyer, course_request(), providers, coupons, entitlements)

    assert isinstance(result, CheckoutRedirect)
    assert result.redirect_url.endswith(result.provider_order_id)
    payment = (await db.execute(select(Payment).where(Payment.id == result.payment_id))).scalar_one()
    assert payment.status == "created"
    assert payment.provider_order_id == result.provider_order_id
    assert payment.invoice_id == f"course|{buyer.id}|archicad-101|12"
    assert payment.amount == Decimal("50")
    assert paypal.created[0]["invoice_id"] == payment.invoice_id
    assert paypal.created[0]["custom_id"] == payment.custom_id
    assert paypal.created[0]["title"] == "ArchiCAD 101"


@pytest.mark.asyncio
async def test_coupon_discount_changes_charged_amount(db, catalog, providers, coupons, entitlements, paypal):
    coupons.add_percent("SAVE10", 10, "cpn-10")

    result = await start_checkout(
        db, catalog["buyer"], course_request(coupon_code="SAVE10"), providers, coupons, entitlements
    )

    assert isinstance(result, CheckoutRedirect)
    assert paypal.created[0]["quote"].amount == Decimal("45")
    assert paypal.created[0]["custom_id"].endswith("|SAVE10|cpn-10")
    assert coupons.redeemed == []


@pytest.mark.asyncio
async def test_rejected_coupon_aborts_without_record(db, catalog, providers, coupons, entitlements, paypal):
    coupons.add_verdict("OLD", {"ok": False, "reason": "EXPIRED"})

    result = await start_checkout(db, catalog["buyer"], course_request(coupon_code="OLD"), providers, coupons, entitlements)

    assert result == CheckoutFailure("coupon_rejected", "EXPIRED")
    assert paypal.created == []
    assert await _count(db, Payment) == 0


@pytest.mark.asyncio
async def test_free_access_short_circuits_provider(db, catalog, providers, coupons, entitlements, paypal, mercadopago):
    coupons.add_percent("GIFT", 100, "cpn-gift")

    result = await start_checkout(
        db, catalog["buyer"], course_request(coupon_code="GIFT"), providers, coupons, entitlements
    )

    assert isinstance(result, CheckoutFreeAccess)
    assert result.product_reference == "archicad-101"
    assert paypal.created == [] and mercadopago.created == []
    assert await _count(db, Payment) == 0
    enrollment = (await db.execute(select(CourseEnrollment))).scalar_one()
    assert enrollment.source == "coupon"
    assert len(coupons.redeemed) == 1


@pytest.mark.asyncio
async def test_provider_failure_marks_failed_to_create(db, catalog, providers, coupons, entitlements, paypal):
    paypal.create_result = GatewayFailure(500, {"name": "INTERNAL_SERVICE_ERROR", "secret": "do-not-leak"})

    result = await start_checkout(db, catalog["buyer"], course_request(), providers, coupons, entitlements)

    assert result == CheckoutFailure("payment_provider_error", status_code=502)
    payment = (await db.execute(select(Payment))).scalar_one()
    assert payment.status == "failed_to_create"
    assert payment.provider_order_id is None
    assert "do-not-leak" not in (payment.failure_reason or "")


@pytest.mark.asyncio
async def test_price_failures_surface_without_provider_call(db, catalog, providers, coupons, entitlements, paypal):
    missing = await start_checkout(
        db, catalog["buyer"], course_request(product_reference="nope"), providers, coupons, entitlements
    )
    unsupported = await start_checkout(
        db, catalog["buyer"], course_request(currency="EUR"), providers, coupons, entitlements
    )

    assert missing.error == "not_found" and missing.status_code == 404
    assert unsupported.error == "unsupported_currency"
    assert paypal.created == []


@pytest.mark.asyncio
async def test_subscription_checkout_requires_billing_member(db, catalog, providers, coupons, entitlements):
    admin = catalog["admin"]
    organization = catalog["organization"]

    result = await start_checkout(db, admin, plan_request(organization.id), providers, coupons, entitlements)

    assert result == CheckoutFailure("forbidden", status_code=403)


@pytest.mark.asyncio
async def test_subscription_checkout_in_ars(db, catalog, providers, coupons, entitlements, mercadopago):
    buyer = catalog["buyer"]
    organization = catalog["organization"]

    result = await start_checkout(
        db,
        buyer,
        plan_request(organization.id, provider="mercadopago", currency="ARS", billing_period="annual"),
        providers,
        coupons,
        entitlements,
    )

    assert isinstance(result, CheckoutRedirect)
    created = mercadopago.created[0]
    assert created["quote"].amount == Decimal("200000")
    assert created["invoice_id"] == f"subscription|{organization.id}|pro|annual"
    assert await _count(db, OrganizationSubscription) == 0


@pytest.mark.asyncio
async def test_quote_never_records_or_grants(db, catalog, coupons, paypal):
    coupons.add_percent("GIFT", 100, "cpn-gift")

    quote = await quote_checkout(db, catalog["buyer"], course_request(coupon_code="GIFT"), coupons)

    assert isinstance(quote, CheckoutQuote)
    assert quote.free_access
    assert quote.original_amount == Decimal("50")
    assert quote.amount == Decimal("0")
    assert await _count(db, Payment) == 0
    assert await _count(db, CourseEnrollment) == 0
    assert coupons.redeemed == []
