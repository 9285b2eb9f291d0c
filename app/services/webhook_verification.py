"""Authentication of inbound provider notifications."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from app.config import get_settings
from app.services.payment_service import MERCADOPAGO, PAYPAL, get_payment_provider
from app.services.paypal_provider import PayPalProvider

logger = logging.getLogger(__name__)
settings = get_settings()


@dataclass
class WebhookNotification:
    """Raw inbound notification; header names are lower-cased."""

    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    payload: Any = None

    @classmethod
    def build(cls, headers: Mapping[str, str], query: Mapping[str, str], body: bytes, payload: Any):
        return cls(
            headers={k.lower(): v for k, v in headers.items()},
            query=dict(query),
            body=body,
            payload=payload,
        )


class WebhookVerifier:
    async def verify(self, notification: WebhookNotification) -> bool:
        raise NotImplementedError


class PayPalWebhookVerifier(WebhookVerifier):
    """Delegates to PayPal's verify-webhook-signature API.

    Transport failures raise ProviderError so the provider retries.
    """

    def __init__(self, provider: PayPalProvider):
        self.provider = provider

    async def verify(self, notification: WebhookNotification) -> bool:
        if not isinstance(notification.payload, dict):
            return False
        return await self.provider.verify_webhook_signature(notification.headers, notification.payload)


def _parse_signature_header(value: str) -> Dict[str, str]:
    parts = {}
    for chunk in value.split(","):
        key, sep, val = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = val.strip()
    return parts


def _mercadopago_data_id(notification: WebhookNotification) -> Optional[str]:
    data_id = notification.query.get("data.id") or notification.query.get("id")
    if data_id is None and isinstance(notification.payload, dict):
        data = notification.payload.get("data")
        if isinstance(data, dict) and data.get("id") is not None:
            data_id = data.get("id")
        elif notification.payload.get("id") is not None:
            data_id = notification.payload.get("id")
    return str(data_id) if data_id is not None else None


class MercadoPagoWebhookVerifier(WebhookVerifier):
    """Checks the ``x-signature`` HMAC, or the shared ``?secret=`` on the notification URL.

    Signed manifest: ``id:{data.id};request-id:{x-request-id};ts:{ts};``.
    """

    def __init__(self, signing_secret: str = "", query_secret: str = ""):
        self.signing_secret = signing_secret
        self.query_secret = query_secret

    def _verify_signature(self, notification: WebhookNotification) -> bool:
        header = notification.headers.get("x-signature")
        if not header:
            return False
        parts = _parse_signature_header(header)
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not ts or not v1:
            return False

        manifest = ""
        data_id = _mercadopago_data_id(notification)
        if data_id:
            # MercadoPago signs alphanumeric ids lower-cased.
            manifest += f"id:{data_id.lower()};"
        request_id = notification.headers.get("x-request-id")
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(self.signing_secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, v1)

    async def verify(self, notification: WebhookNotification) -> bool:
        if self.signing_secret:
            return self._verify_signature(notification)
        if self.query_secret:
            supplied = notification.query.get("secret") or ""
            return hmac.compare_digest(supplied.encode(), self.query_secret.encode())
        logger.warning("No MercadoPago webhook secret configured; rejecting notification")
        return False


_verifiers: Dict[str, WebhookVerifier] = {}


def get_webhook_verifier(provider_name: str) -> WebhookVerifier:
    verifier = _verifiers.get(provider_name)
    if verifier is not None:
        return verifier
    if provider_name == PAYPAL:
        verifier = PayPalWebhookVerifier(get_payment_provider(PAYPAL))
    elif provider_name == MERCADOPAGO:
        verifier = MercadoPagoWebhookVerifier(
            signing_secret=settings.MP_WEBHOOK_SIGNING_SECRET,
            query_secret=settings.MP_WEBHOOK_SECRET,
        )
    else:
        raise KeyError(provider_name)
    _verifiers[provider_name] = verifier
    return verifier
