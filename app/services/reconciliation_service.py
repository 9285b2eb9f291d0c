"""Turn provider notifications into payment status changes and entitlement grants.

Notifications are hints only: every decision is taken from a fresh
``get_order`` against the provider, so the same notification may arrive any
number of times, in any order, and concurrently with the buyer's return URL.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Payment
from app.services import audit_service
from app.services.audit_service import record_payment_event
from app.services.coupon_service import CouponAuthority, CouponAuthorityError
from app.services.entitlement_service import EntitlementService
from app.services.identifier_codec import (
    DEFAULT_COURSE_MONTHS,
    ProductType,
    PurchaseIntent,
    decode_identifiers,
)
from app.services.payment_service import MERCADOPAGO, PAYPAL, PaymentProvider
from app.services.payment_state import PaymentStatus, is_terminal, transition_payment
from app.services.webhook_verification import WebhookNotification, WebhookVerifier

logger = logging.getLogger(__name__)

PAYPAL_ORDERS_PATH = "/v2/checkout/orders/"
INTENT_MATCH_FIELDS = ("product_type", "buyer_id", "product_reference", "organization_id", "billing_period")


@dataclass(frozen=True)
class ReconcileOutcome:
    outcome: str
    payment_id: Optional[int] = None
    status: Optional[str] = None


def _deep_find(value: Any, key: str) -> Optional[str]:
    if isinstance(value, dict):
        found = value.get(key)
        if isinstance(found, str) and found:
            return found
        for child in value.values():
            found = _deep_find(child, key)
            if found:
                return found
    elif isinstance(value, list):
        for child in value:
            found = _deep_find(child, key)
            if found:
                return found
    return None


def extract_paypal_order_id(event: Any) -> Optional[str]:
    if not isinstance(event, dict):
        return None
    resource = event.get("resource")
    if not isinstance(resource, dict):
        return None

    if str(event.get("event_type") or "").startswith("CHECKOUT.ORDER") and resource.get("id"):
        return str(resource["id"])

    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
    if related.get("order_id"):
        return str(related["order_id"])

    for link in resource.get("links") or []:
        if not isinstance(link, dict):
            continue
        href = link.get("href")
        if link.get("rel") == "up" and isinstance(href, str) and PAYPAL_ORDERS_PATH in href:
            return href.rsplit(PAYPAL_ORDERS_PATH, 1)[1].split("/", 1)[0].split("?", 1)[0]

    return _deep_find(event, "order_id")


def extract_mercadopago_resource(notification: WebhookNotification) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(topic, resource_id)`` from a webhook or legacy IPN notification."""
    payload = notification.payload if isinstance(notification.payload, dict) else {}
    query = notification.query

    topic = payload.get("type") or payload.get("topic") or query.get("type") or query.get("topic")
    if not topic and isinstance(payload.get("action"), str):
        topic = payload["action"].split(".", 1)[0]

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    resource_id = data.get("id") or query.get("data.id") or query.get("id")
    if resource_id is None and topic and payload.get("resource"):
        resource_id = str(payload["resource"]).rstrip("/").rsplit("/", 1)[-1]
    if resource_id is None and payload.get("id") is not None and topic:
        resource_id = payload.get("id")

    return (str(topic) if topic else None, str(resource_id) if resource_id is not None else None)


def _intent_mismatch(decoded: PurchaseIntent, stored: PurchaseIntent) -> Optional[str]:
    for name in INTENT_MATCH_FIELDS:
        value = getattr(decoded, name)
        if value is not None and value != getattr(stored, name):
            return name
    return None


async def _grant(
    payment: Payment,
    intent: PurchaseIntent,
    entitlements: EntitlementService,
) -> None:
    if intent.product_type == ProductType.SUBSCRIPTION:
        await entitlements.activate_subscription(
            int(intent.organization_id),
            intent.product_reference,
            intent.billing_period,
            payment_id=payment.id,
            amount=payment.amount,
            currency=payment.currency,
        )
    else:
        await entitlements.grant_course_access(
            payment.buyer_id,
            intent.product_reference,
            intent.months or DEFAULT_COURSE_MONTHS,
            payment_id=payment.id,
        )


async def _redeem_coupon(
    db: AsyncSession,
    payment: Payment,
    intent: PurchaseIntent,
    authority: CouponAuthority,
) -> None:
    if not intent.coupon_code:
        return
    try:
        await authority.redeem(intent.coupon_id, intent.coupon_code, intent.product_reference, payment.provider_order_id)
    except CouponAuthorityError as exc:
        logger.error("Coupon %s redemption failed for payment=%s: %s", intent.coupon_code, payment.id, exc)
        await record_payment_event(
            db,
            payment.provider,
            "coupon.redeem",
            audit_service.OUTCOME_COUPON_REDEMPTION_FAILED,
            provider_order_id=payment.provider_order_id,
            payment_id=payment.id,
            detail=str(exc),
        )


async def reconcile_order(
    db: AsyncSession,
    provider: PaymentProvider,
    order_id: str,
    authority: CouponAuthority,
    entitlements: EntitlementService,
    event_type: str = "reconcile",
    provider_event_id: Optional[str] = None,
    raw_payload: Any = None,
) -> ReconcileOutcome:
    """Bring the local payment for ``order_id`` in line with the provider.

    Raises ProviderError when the provider cannot be read or the capture fails;
    the payment then stays ``created`` and a later notification retries.
    """
    snapshot = await provider.get_order(order_id)

    async def audit(outcome: str, payment: Optional[Payment] = None, detail: Optional[str] = None) -> ReconcileOutcome:
        await record_payment_event(
            db,
            provider.name,
            event_type,
            outcome,
            provider_event_id=provider_event_id,
            provider_order_id=order_id,
            payment_id=payment.id if payment else None,
            detail=detail,
            raw_payload=raw_payload,
        )
        return ReconcileOutcome(outcome, payment.id if payment else None, payment.status if payment else None)

    result = await db.execute(
        select(Payment)
        .where(Payment.provider == provider.name, Payment.provider_order_id == order_id)
        .with_for_update()
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        logger.warning("No local payment for %s order %s", provider.name, order_id)
        return await audit(audit_service.OUTCOME_UNKNOWN_ORDER)

    if is_terminal(payment.status):
        logger.info("Payment %s already %s; ignoring %s", payment.id, payment.status, event_type)
        return await audit(audit_service.OUTCOME_DUPLICATE, payment, f"already {payment.status}")

    stored = PurchaseIntent.from_dict(payment.purchase_intent)
    decoded = decode_identifiers(snapshot.custom_id, snapshot.invoice_id)
    if not decoded.is_processable:
        logger.warning(
            "Undecodable identifiers on %s order %s: custom_id=%r invoice_id=%r",
            provider.name,
            order_id,
            snapshot.custom_id,
            snapshot.invoice_id,
        )
        return await audit(audit_service.OUTCOME_UNDECODABLE, payment, "no product type in identifiers")
    mismatch = _intent_mismatch(decoded, stored)
    if mismatch:
        logger.warning("Identifier %s on %s order %s disagrees with payment %s", mismatch, provider.name, order_id, payment.id)
        return await audit(audit_service.OUTCOME_UNDECODABLE, payment, f"{mismatch} mismatch")

    status = snapshot.status
    provider_payment_id = snapshot.payment_id
    if snapshot.requires_capture:
        captured = await provider.capture(order_id)
        status = captured.status
        provider_payment_id = captured.payment_id or provider_payment_id

    if status is None:
        return await audit(audit_service.OUTCOME_PENDING, payment, f"provider status {snapshot.raw_status}")

    if snapshot.amount is not None and (snapshot.amount != payment.amount or snapshot.currency != payment.currency):
        logger.warning(
            "Amount on %s order %s is %s %s, payment %s expected %s %s",
            provider.name,
            order_id,
            snapshot.amount,
            snapshot.currency,
            payment.id,
            payment.amount,
            payment.currency,
        )

    new_status = PaymentStatus(status)
    won = await transition_payment(
        db,
        payment,
        new_status,
        provider_payment_id=provider_payment_id,
        failure_reason=None if new_status == PaymentStatus.APPROVED else f"provider status {snapshot.raw_status}",
    )
    if not won:
        return await audit(audit_service.OUTCOME_DUPLICATE, payment, "concurrent reconcile already transitioned")

    if new_status == PaymentStatus.APPROVED:
        await _grant(payment, stored, entitlements)
        await _redeem_coupon(db, payment, stored, authority)

    logger.info("Payment %s (%s order %s) -> %s", payment.id, provider.name, order_id, new_status.value)
    return await audit(audit_service.OUTCOME_TRANSITIONED, payment, new_status.value)


async def handle_notification(
    db: AsyncSession,
    provider: PaymentProvider,
    verifier: WebhookVerifier,
    notification: WebhookNotification,
    authority: CouponAuthority,
    entitlements: EntitlementService,
) -> ReconcileOutcome:
    payload = notification.payload if isinstance(notification.payload, dict) else {}

    if not await verifier.verify(notification):
        logger.warning("Rejected unauthenticated %s notification", provider.name)
        await record_payment_event(
            db, provider.name, str(payload.get("event_type") or payload.get("type") or "unknown"),
            audit_service.OUTCOME_IGNORED_UNAUTHENTICATED,
        )
        return ReconcileOutcome(audit_service.OUTCOME_IGNORED_UNAUTHENTICATED)

    event_id = str(payload["id"]) if payload.get("id") is not None else None
    if provider.name == PAYPAL:
        event_type = str(payload.get("event_type") or "unknown")
        order_id = extract_paypal_order_id(payload)
    elif provider.name == MERCADOPAGO:
        topic, resource_id = extract_mercadopago_resource(notification)
        event_type = str(payload.get("action") or topic or "unknown")
        order_id = await provider.resolve_order_id(resource_id, topic) if resource_id else None
    else:
        event_type = "unknown"
        order_id = None

    if not order_id:
        await record_payment_event(
            db,
            provider.name,
            event_type,
            audit_service.OUTCOME_IGNORED_IRRELEVANT,
            provider_event_id=event_id,
            raw_payload=payload,
        )
        return ReconcileOutcome(audit_service.OUTCOME_IGNORED_IRRELEVANT)

    return await reconcile_order(
        db,
        provider,
        order_id,
        authority,
        entitlements,
        event_type=event_type,
        provider_event_id=event_id,
        raw_payload=payload,
    )
