"""Payment provider abstraction shared by the PayPal and MercadoPago gateways."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import httpx

from app.config import get_settings
from app.services.pricing_service import PriceQuote

logger = logging.getLogger(__name__)
settings = get_settings()

PAYPAL = "paypal"
MERCADOPAGO = "mercadopago"
SUPPORTED_PROVIDERS = (PAYPAL, MERCADOPAGO)


class ProviderError(Exception):
    """A provider call failed: transport error, timeout, non-2xx or unusable body."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


@dataclass(frozen=True)
class BuyerContact:
    email: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def first_name(self) -> Optional[str]:
        if not self.full_name:
            return None
        return self.full_name.split(" ", 1)[0]

    @property
    def last_name(self) -> Optional[str]:
        if not self.full_name or " " not in self.full_name:
            return None
        return self.full_name.split(" ", 1)[1]


@dataclass(frozen=True)
class CreatedOrder:
    order_id: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayFailure:
    status_code: Optional[int]
    body: Any


CreateOrderResult = Union[CreatedOrder, GatewayFailure]


@dataclass(frozen=True)
class ProviderOrderSnapshot:
    """Authoritative view of an order as reported by the provider.

    ``status`` is the mapped local terminal status (approved, declined,
    cancelled) or None while the order is still pending.
    """

    provider: str
    order_id: str
    raw_status: Optional[str]
    status: Optional[str]
    requires_capture: bool = False
    invoice_id: Optional[str] = None
    custom_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payment_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderCaptureResult:
    order_id: str
    raw_status: Optional[str]
    status: Optional[str]
    payment_id: Optional[str] = None
    invoice_id: Optional[str] = None
    custom_id: Optional[str] = None


class PaymentProvider:
    """Base class for hosted-checkout gateways talking JSON over HTTPS."""

    name = ""

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def _auth_headers(self) -> Dict[str, str]:
        return {}

    async def _send(self, method: str, path: str, *, authenticate: bool = True, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if authenticate:
            headers.update(await self._auth_headers())
        try:
            async with self._client() as client:
                return await client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.name} {method} {path} failed: {exc!r}") from exc

    async def _request_json(self, method: str, path: str, **kwargs) -> dict:
        """Send a request and return the JSON body, raising ProviderError on any failure."""
        response = await self._send(method, path, **kwargs)
        body = _json_or_text(response)
        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} {method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        if not isinstance(body, dict):
            raise ProviderError(
                f"{self.name} {method} {path} returned a non-object body",
                status_code=response.status_code,
                body=body,
            )
        return body

    async def create_order(
        self,
        quote: PriceQuote,
        invoice_id: str,
        custom_id: str,
        buyer: BuyerContact,
        title: str,
        product_reference: str,
    ) -> CreateOrderResult:
        raise NotImplementedError

    async def get_order(self, order_id: str) -> ProviderOrderSnapshot:
        raise NotImplementedError

    async def capture(self, order_id: str) -> ProviderCaptureResult:
        raise NotImplementedError

    async def resolve_order_id(self, resource_id: str, topic: Optional[str] = None) -> Optional[str]:
        """Map the id a notification points at to the order id stored locally."""
        return resource_id


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        return None


_providers: Dict[str, PaymentProvider] = {}


def _build_provider(name: str) -> PaymentProvider:
    if name == PAYPAL:
        from app.services.paypal_provider import PayPalProvider

        return PayPalProvider(
            base_url=settings.PAYPAL_BASE_URL,
            client_id=settings.PAYPAL_CLIENT_ID,
            client_secret=settings.PAYPAL_CLIENT_SECRET,
            timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
            refresh_skew_seconds=settings.PAYPAL_TOKEN_REFRESH_SKEW_SECONDS,
        )
    if name == MERCADOPAGO:
        from app.services.mercadopago_provider import MercadoPagoProvider

        return MercadoPagoProvider(
            base_url=settings.MP_BASE_URL,
            access_token=settings.MP_ACCESS_TOKEN,
            timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
        )
    raise KeyError(name)


def get_payment_provider(name: str) -> PaymentProvider:
    provider = _providers.get(name)
    if provider is None:
        provider = _build_provider(name)
        _providers[name] = provider
    return provider


def get_payment_providers() -> Dict[str, PaymentProvider]:
    return {name: get_payment_provider(name) for name in SUPPORTED_PROVIDERS}
