"""MercadoPago Checkout Pro gateway.

The order id stored locally is the preference id. Payment status lives on the
merchant orders created for that preference, so lookups go through
``/merchant_orders/search?preference_id=...``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from app.config import get_settings
from app.services.payment_service import (
    MERCADOPAGO,
    BuyerContact,
    CreatedOrder,
    CreateOrderResult,
    GatewayFailure,
    PaymentProvider,
    ProviderCaptureResult,
    ProviderError,
    ProviderOrderSnapshot,
    to_decimal,
)
from app.services.pricing_service import PriceQuote

logger = logging.getLogger(__name__)
settings = get_settings()

CANCELLED_PAYMENT_STATUSES = {"cancelled", "refunded", "charged_back"}
PAYMENT_TOPICS = {"payment"}
MERCHANT_ORDER_TOPICS = {"merchant_order", "topic_merchant_order_wh"}


def map_merchant_orders(orders: List[Dict[str, Any]]) -> Optional[str]:
    """Collapse the merchant orders of one preference into a local status."""
    payments = [p for order in orders for p in order.get("payments") or [] if isinstance(p, dict)]
    statuses = [p.get("status") for p in payments]

    if "approved" in statuses:
        return "approved"
    if orders and all(order.get("status") == "expired" for order in orders):
        return "cancelled"
    if orders and statuses and all(order.get("status") == "closed" for order in orders):
        if all(s == "rejected" for s in statuses):
            return "declined"
        if all(s in CANCELLED_PAYMENT_STATUSES for s in statuses):
            return "cancelled"
    return None


class MercadoPagoProvider(PaymentProvider):
    name = MERCADOPAGO

    def __init__(
        self,
        base_url: str,
        access_token: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        notification_url: Optional[str] = None,
        return_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        statement_descriptor: Optional[str] = None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.access_token = access_token
        api_url = settings.PUBLIC_API_URL.rstrip("/")
        self.notification_url = notification_url or f"{api_url}/v1/webhooks/mercadopago"
        self.return_url = return_url or f"{api_url}/v1/checkout/mercadopago/return"
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.MP_WEBHOOK_SECRET
        self.statement_descriptor = statement_descriptor or settings.MP_STATEMENT_DESCRIPTOR

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _notification_url(self) -> str:
        if not self.webhook_secret:
            return self.notification_url
        return f"{self.notification_url}?{urlencode({'secret': self.webhook_secret})}"

    async def create_order(
        self,
        quote: PriceQuote,
        invoice_id: str,
        custom_id: str,
        buyer: BuyerContact,
        title: str,
        product_reference: str,
    ) -> CreateOrderResult:
        payload = {
            "items": [
                {
                    "id": product_reference,
                    "category_id": "services",
                    "title": title,
                    "quantity": 1,
                    "unit_price": float(quote.amount),
                    "currency_id": quote.currency,
                }
            ],
            "external_reference": custom_id,
            "payer": {
                "email": buyer.email,
                "name": buyer.first_name,
                "surname": buyer.last_name,
            },
            "notification_url": self._notification_url(),
            "back_urls": {
                "success": self.return_url,
                "failure": self.return_url,
                "pending": self.return_url,
            },
            "auto_return": "approved",
            "binary_mode": True,
            "statement_descriptor": self.statement_descriptor,
            "metadata": {"invoice_id": invoice_id, "custom_id": custom_id},
        }

        try:
            response = await self._send("POST", "/checkout/preferences", json=payload)
        except ProviderError as exc:
            logger.error("MercadoPago create preference failed: %s", exc)
            return GatewayFailure(exc.status_code, str(exc))

        try:
            body = response.json()
        except ValueError:
            body = response.text
        if response.status_code >= 400 or not isinstance(body, dict):
            logger.error("MercadoPago create preference returned %s: %s", response.status_code, body)
            return GatewayFailure(response.status_code, body)

        preference_id = body.get("id")
        redirect_url = body.get("init_point") or body.get("sandbox_init_point")
        if not preference_id or not redirect_url:
            logger.error("MercadoPago preference response without id/init_point: %s", body)
            return GatewayFailure(response.status_code, body)

        return CreatedOrder(order_id=str(preference_id), redirect_url=redirect_url)

    async def get_order(self, order_id: str) -> ProviderOrderSnapshot:
        preference = await self._request_json("GET", f"/checkout/preferences/{order_id}")
        search = await self._request_json("GET", "/merchant_orders/search", params={"preference_id": order_id})
        orders = [o for o in search.get("elements") or [] if isinstance(o, dict)]

        status = map_merchant_orders(orders)
        metadata = preference.get("metadata") or {}
        item = next(iter(preference.get("items") or []), {}) or {}
        payments = [p for o in orders for p in o.get("payments") or [] if isinstance(p, dict)]
        approved = next((p for p in payments if p.get("status") == "approved"), None)
        latest = approved or (payments[-1] if payments else {})

        return ProviderOrderSnapshot(
            provider=self.name,
            order_id=order_id,
            raw_status=orders[-1].get("status") if orders else None,
            status=status,
            requires_capture=False,
            invoice_id=metadata.get("invoice_id"),
            custom_id=preference.get("external_reference") or metadata.get("custom_id"),
            amount=to_decimal(latest.get("transaction_amount") or item.get("unit_price")),
            currency=latest.get("currency_id") or item.get("currency_id"),
            payment_id=str(latest["id"]) if latest.get("id") is not None else None,
        )

    async def capture(self, order_id: str) -> ProviderCaptureResult:
        # Checkout Pro payments settle on their own; report the current state.
        snapshot = await self.get_order(order_id)
        return ProviderCaptureResult(
            order_id=snapshot.order_id,
            raw_status=snapshot.raw_status,
            status=snapshot.status,
            payment_id=snapshot.payment_id,
            invoice_id=snapshot.invoice_id,
            custom_id=snapshot.custom_id,
        )

    async def resolve_order_id(self, resource_id: str, topic: Optional[str] = None) -> Optional[str]:
        if topic in PAYMENT_TOPICS:
            payment = await self._request_json("GET", f"/v1/payments/{resource_id}")
            merchant_order_id = (payment.get("order") or {}).get("id")
            if merchant_order_id is None:
                logger.info("MercadoPago payment %s has no merchant order yet", resource_id)
                return None
            resource_id = str(merchant_order_id)
        elif topic not in MERCHANT_ORDER_TOPICS:
            return None

        merchant_order = await self._request_json("GET", f"/merchant_orders/{resource_id}")
        preference_id = merchant_order.get("preference_id")
        return str(preference_id) if preference_id else None
