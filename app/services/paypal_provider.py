"""PayPal Orders v2 gateway."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx

from app.config import get_settings
from app.services.identifier_codec import MAX_PROVIDER_FIELD_LENGTH
from app.services.payment_service import (
    PAYPAL,
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
from app.services.token_cache import AccessToken, AccessTokenCache

logger = logging.getLogger(__name__)
settings = get_settings()

CAPTURE_STATUS_MAP = {
    "COMPLETED": "approved",
    "DECLINED": "declined",
    "FAILED": "declined",
}
APPROVE_LINK_RELS = ("approve", "payer-action")
ALREADY_CAPTURED_ISSUE = "ORDER_ALREADY_CAPTURED"

VERIFY_HEADER_FIELDS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def format_amount(amount: Decimal) -> str:
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _first(items: Any) -> Dict[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _issues(body: Any) -> set:
    if not isinstance(body, dict):
        return set()
    return {d.get("issue") for d in body.get("details") or [] if isinstance(d, dict)}


class PayPalProvider(PaymentProvider):
    name = PAYPAL

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        timeout: float = 15.0,
        refresh_skew_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_cache: Optional[AccessTokenCache] = None,
        webhook_id: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        brand_name: Optional[str] = None,
    ):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.client_id = client_id
        self.client_secret = client_secret
        self.tokens = token_cache or AccessTokenCache(self.fetch_access_token, refresh_skew_seconds)
        self.webhook_id = webhook_id if webhook_id is not None else settings.PAYPAL_WEBHOOK_ID
        self.return_url = return_url or f"{settings.PUBLIC_API_URL.rstrip('/')}/v1/checkout/paypal/return"
        self.cancel_url = cancel_url or f"{self.return_url}?cancelled=1"
        self.brand_name = brand_name or settings.PAYPAL_BRAND_NAME

    async def fetch_access_token(self) -> AccessToken:
        body = await self._request_json(
            "POST",
            "/v1/oauth2/token",
            authenticate=False,
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        token = body.get("access_token")
        if not token:
            raise ProviderError("PayPal token response has no access_token", body=body)
        try:
            expires_in = float(body.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0.0
        return AccessToken(value=token, expires_in=expires_in)

    async def get_access_token(self) -> str:
        return await self.tokens.get()

    async def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self.get_access_token()}"}

    async def _send(self, method: str, path: str, *, authenticate: bool = True, **kwargs) -> httpx.Response:
        response = await super()._send(method, path, authenticate=authenticate, **kwargs)
        if authenticate and response.status_code == 401:
            # Revoked or expired early; the next call exchanges credentials again.
            logger.warning("PayPal rejected the cached access token on %s %s", method, path)
            self.tokens.clear()
        return response

    async def create_order(
        self,
        quote: PriceQuote,
        invoice_id: str,
        custom_id: str,
        buyer: BuyerContact,
        title: str,
        product_reference: str,
    ) -> CreateOrderResult:
        for field, value in (("invoice_id", invoice_id), ("custom_id", custom_id)):
            if len(value) > MAX_PROVIDER_FIELD_LENGTH:
                logger.error("PayPal %s too long (%d chars): %s", field, len(value), value)
                return GatewayFailure(None, f"{field} exceeds {MAX_PROVIDER_FIELD_LENGTH} characters")

        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": product_reference,
                    "description": title[:MAX_PROVIDER_FIELD_LENGTH],
                    "invoice_id": invoice_id,
                    "custom_id": custom_id,
                    "amount": {"currency_code": quote.currency, "value": format_amount(quote.amount)},
                }
            ],
            "application_context": {
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            },
        }
        if buyer.email:
            payload["payer"] = {"email_address": buyer.email}

        try:
            response = await self._send("POST", "/v2/checkout/orders", json=payload)
        except ProviderError as exc:
            logger.error("PayPal create order failed: %s", exc)
            return GatewayFailure(exc.status_code, str(exc))

        try:
            body = response.json()
        except ValueError:
            body = response.text
        if response.status_code >= 400 or not isinstance(body, dict):
            logger.error("PayPal create order returned %s: %s", response.status_code, body)
            return GatewayFailure(response.status_code, body)

        order_id = body.get("id")
        approve_url = next(
            (link.get("href") for link in body.get("links") or [] if link.get("rel") in APPROVE_LINK_RELS),
            None,
        )
        if not order_id or not approve_url:
            logger.error("PayPal create order response without id/approve link: %s", body)
            return GatewayFailure(response.status_code, body)

        return CreatedOrder(order_id=order_id, redirect_url=approve_url)

    def _snapshot(self, order_id: str, body: Dict[str, Any]) -> ProviderOrderSnapshot:
        raw_status = body.get("status")
        unit = _first(body.get("purchase_units"))
        capture = _first((unit.get("payments") or {}).get("captures"))
        amount = unit.get("amount") or capture.get("amount") or {}

        status = None
        requires_capture = False
        if raw_status == "COMPLETED":
            status = CAPTURE_STATUS_MAP.get(capture.get("status"))
        elif raw_status == "VOIDED":
            status = "cancelled"
        elif raw_status == "APPROVED":
            requires_capture = True

        return ProviderOrderSnapshot(
            provider=self.name,
            order_id=body.get("id") or order_id,
            raw_status=raw_status,
            status=status,
            requires_capture=requires_capture,
            invoice_id=unit.get("invoice_id") or capture.get("invoice_id"),
            custom_id=unit.get("custom_id") or capture.get("custom_id"),
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            payment_id=capture.get("id"),
        )

    async def get_order(self, order_id: str) -> ProviderOrderSnapshot:
        body = await self._request_json("GET", f"/v2/checkout/orders/{order_id}")
        return self._snapshot(order_id, body)

    async def capture(self, order_id: str) -> ProviderCaptureResult:
        response = await self._send(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={"Prefer": "return=representation"},
        )
        try:
            body = response.json()
        except ValueError:
            body = response.text

        if response.status_code == 422 and ALREADY_CAPTURED_ISSUE in _issues(body):
            logger.info("PayPal order %s already captured; re-reading it", order_id)
            snapshot = await self.get_order(order_id)
        elif response.status_code >= 400 or not isinstance(body, dict):
            raise ProviderError(
                f"PayPal capture of {order_id} returned {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        else:
            snapshot = self._snapshot(order_id, body)

        return ProviderCaptureResult(
            order_id=snapshot.order_id,
            raw_status=snapshot.raw_status,
            status=snapshot.status,
            payment_id=snapshot.payment_id,
            invoice_id=snapshot.invoice_id,
            custom_id=snapshot.custom_id,
        )

    async def verify_webhook_signature(self, headers: Dict[str, str], event: Dict[str, Any]) -> bool:
        """Ask PayPal whether the transmission headers sign this event for our webhook id."""
        if not self.webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID is not configured; rejecting webhook")
            return False

        payload: Dict[str, Any] = {}
        for field, header in VERIFY_HEADER_FIELDS.items():
            value = headers.get(header)
            if not value:
                return False
            payload[field] = value
        payload["webhook_id"] = self.webhook_id
        payload["webhook_event"] = event

        body = await self._request_json("POST", "/v1/notifications/verify-webhook-signature", json=payload)
        return body.get("verification_status") == "SUCCESS"
