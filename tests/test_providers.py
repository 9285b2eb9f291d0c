import json
from decimal import Decimal

import httpx
import pytest

from app.services.mercadopago_provider import MercadoPagoProvider, map_merchant_orders
from app.services.payment_service import BuyerContact, CreatedOrder, GatewayFailure, ProviderError
from app.services.paypal_provider import PayPalProvider, format_amount
from app.services.pricing_service import PriceQuote

BUYER = BuyerContact(email="buyer@example.com", full_name="Ana Lopez")


class Recorder:
    """httpx.MockTransport handler that routes on method and path and keeps every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "not found"})
        if callable(handler):
            return handler(request)
        return httpx.Response(handler.status_code, headers=handler.headers, content=handler.content)

    def paths(self, method=None):
        return [r.url.path for r in self.requests if method is None or r.method == method]


def token_response():
    return httpx.Response(200, json={"access_token": "A21-token", "token_type": "Bearer", "expires_in": 32400})


def paypal(routes, **kwargs):
    recorder = Recorder({("POST", "/v1/oauth2/token"): token_response(), **routes})
    provider = PayPalProvider(
        "https://paypal.test",
        "client-id",
        "client-secret",
        transport=httpx.MockTransport(recorder),
        webhook_id=kwargs.pop("webhook_id", "WH-1"),
        return_url="https://api.example.test/v1/checkout/paypal/return",
        **kwargs,
    )
    return provider, recorder


def paypal_order(status, capture_status=None):
    unit = {
        "reference_id": "archicad-101",
        "invoice_id": "course|1|archicad-101|12",
        "custom_id": "1|course|archicad-101|12|||||",
        "amount": {"currency_code": "USD", "value": "45.00"},
    }
    if capture_status:
        unit["payments"] = {"captures": [{"id": "CAP-9", "status": capture_status}]}
    return {"id": "ORDER-1", "status": status, "purchase_units": [unit]}


def test_format_amount_rounds_half_up():
    assert format_amount(Decimal("45")) == "45.00"
    assert format_amount(Decimal("10.005")) == "10.01"


@pytest.mark.asyncio
async def test_paypal_create_order_sends_identifiers_and_reuses_token():
    created = httpx.Response(
        201,
        json={
            "id": "ORDER-1",
            "status": "CREATED",
            "links": [
                {"rel": "self", "href": "https://paypal.test/v2/checkout/orders/ORDER-1"},
                {"rel": "approve", "href": "https://www.paypal.test/checkoutnow?token=ORDER-1"},
            ],
        },
    )
    provider, recorder = paypal({
        ("POST", "/v2/checkout/orders"): created,
        ("GET", "/v2/checkout/orders/ORDER-1"): httpx.Response(200, json=paypal_order("CREATED")),
    })
    quote = PriceQuote(amount=Decimal("45"), currency="USD", provider="paypal", months=12)

    result = await provider.create_order(
        quote, "course|1|archicad-101|12", "1|course|archicad-101|12|||||", BUYER, "ArchiCAD 101", "archicad-101"
    )
    await provider.get_order("ORDER-1")

    assert result == CreatedOrder("ORDER-1", "https://www.paypal.test/checkoutnow?token=ORDER-1")
    assert recorder.paths().count("/v1/oauth2/token") == 1
    order_request = next(r for r in recorder.requests if r.url.path == "/v2/checkout/orders")
    assert order_request.headers["Authorization"] == "Bearer A21-token"
    body = json.loads(order_request.content)
    unit = body["purchase_units"][0]
    assert body["intent"] == "CAPTURE"
    assert unit["invoice_id"] == "course|1|archicad-101|12"
    assert unit["custom_id"] == "1|course|archicad-101|12|||||"
    assert unit["amount"] == {"currency_code": "USD", "value": "45.00"}
    assert body["application_context"]["return_url"] == "https://api.example.test/v1/checkout/paypal/return"
    assert body["payer"] == {"email_address": "buyer@example.com"}


@pytest.mark.asyncio
async def test_paypal_rejected_token_is_exchanged_again():
    rejected = httpx.Response(401, json={"name": "AUTHENTICATION_FAILURE"})
    provider, recorder = paypal({("GET", "/v2/checkout/orders/ORDER-1"): rejected})

    for _ in range(3):
        with pytest.raises(ProviderError) as excinfo:
            await provider.get_order("ORDER-1")
        assert excinfo.value.status_code == 401

    assert recorder.paths().count("/v1/oauth2/token") == 3
    assert recorder.paths().count("/v2/checkout/orders/ORDER-1") == 3


@pytest.mark.asyncio
async def test_paypal_create_order_with_revoked_token_clears_cache():
    provider, recorder = paypal({
        ("POST", "/v2/checkout/orders"): httpx.Response(401, json={"name": "AUTHENTICATION_FAILURE"}),
    })
    quote = PriceQuote(amount=Decimal("45"), currency="USD", provider="paypal")

    result = await provider.create_order(quote, "course|1|x|12", "1|course|x|12|||||", BUYER, "Course", "x")
    await provider.get_access_token()

    assert isinstance(result, GatewayFailure)
    assert result.status_code == 401
    assert recorder.paths().count("/v1/oauth2/token") == 2


@pytest.mark.asyncio
async def test_paypal_refuses_identifiers_over_field_limit():
    provider, recorder = paypal({})
    quote = PriceQuote(amount=Decimal("45"), currency="USD", provider="paypal")

    result = await provider.create_order(quote, "course|1|x|12", "x" * 128, BUYER, "Course", "x")

    assert isinstance(result, GatewayFailure)
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_paypal_create_order_error_is_gateway_failure():
    provider, _ = paypal({
        ("POST", "/v2/checkout/orders"): httpx.Response(400, json={"name": "INVALID_REQUEST"}),
    })
    quote = PriceQuote(amount=Decimal("45"), currency="USD", provider="paypal")

    result = await provider.create_order(quote, "course|1|x|12", "1|course|x|12|||||", BUYER, "Course", "x")

    assert result == GatewayFailure(400, {"name": "INVALID_REQUEST"})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "raw_status,capture_status,status,requires_capture",
    [
        ("CREATED", None, None, False),
        ("PAYER_ACTION_REQUIRED", None, None, False),
        ("APPROVED", None, None, True),
        ("COMPLETED", "COMPLETED", "approved", False),
        ("COMPLETED", "PENDING", None, False),
        ("COMPLETED", "DECLINED", "declined", False),
        ("VOIDED", None, "cancelled", False),
    ],
)
async def test_paypal_order_status_mapping(raw_status, capture_status, status, requires_capture):
    provider, _ = paypal({
        ("GET", "/v2/checkout/orders/ORDER-1"): httpx.Response(200, json=paypal_order(raw_status, capture_status)),
    })

    snapshot = await provider.get_order("ORDER-1")

    assert snapshot.status == status
    assert snapshot.requires_capture is requires_capture
    assert snapshot.invoice_id == "course|1|archicad-101|12"
    assert snapshot.amount == Decimal("45.00")
    assert snapshot.currency == "USD"


@pytest.mark.asyncio
async def test_paypal_capture_returns_capture_id():
    def capture(request):
        assert request.headers["Prefer"] == "return=representation"
        return httpx.Response(201, json=paypal_order("COMPLETED", "COMPLETED"))

    provider, _ = paypal({("POST", "/v2/checkout/orders/ORDER-1/capture"): capture})

    result = await provider.capture("ORDER-1")

    assert result.status == "approved"
    assert result.payment_id == "CAP-9"


@pytest.mark.asyncio
async def test_paypal_capture_already_captured_rereads_order():
    already = httpx.Response(
        422,
        json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]},
    )
    provider, recorder = paypal({
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): already,
        ("GET", "/v2/checkout/orders/ORDER-1"): httpx.Response(200, json=paypal_order("COMPLETED", "COMPLETED")),
    })

    result = await provider.capture("ORDER-1")

    assert result.status == "approved"
    assert "/v2/checkout/orders/ORDER-1" in recorder.paths("GET")


@pytest.mark.asyncio
async def test_paypal_capture_failure_raises():
    provider, _ = paypal({
        ("POST", "/v2/checkout/orders/ORDER-1/capture"): httpx.Response(500, json={"name": "INTERNAL_SERVER_ERROR"}),
    })

    with pytest.raises(ProviderError) as excinfo:
        await provider.capture("ORDER-1")
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_paypal_transport_error_becomes_provider_error():
    def boom(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    provider, _ = paypal({("GET", "/v2/checkout/orders/ORDER-1"): boom})

    with pytest.raises(ProviderError):
        await provider.get_order("ORDER-1")


@pytest.mark.asyncio
async def test_paypal_verify_webhook_signature():
    seen = {}

    def verify(request):
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"verification_status": "SUCCESS"})

    provider, _ = paypal({("POST", "/v1/notifications/verify-webhook-signature"): verify})
    headers = {
        "paypal-auth-algo": "SHA256withRSA",
        "paypal-cert-url": "https://api.paypal.test/cert.pem",
        "paypal-transmission-id": "t-1",
        "paypal-transmission-sig": "sig",
        "paypal-transmission-time": "2026-01-01T00:00:00Z",
    }
    event = {"id": "WH-EVT-1", "event_type": "CHECKOUT.ORDER.APPROVED"}

    assert await provider.verify_webhook_signature(headers, event) is True
    assert seen["webhook_id"] == "WH-1"
    assert seen["transmission_id"] == "t-1"
    assert seen["webhook_event"] == event

    missing = dict(headers)
    del missing["paypal-transmission-sig"]
    assert await provider.verify_webhook_signature(missing, event) is False


@pytest.mark.asyncio
async def test_paypal_without_webhook_id_rejects():
    provider, recorder = paypal({}, webhook_id="")

    assert await provider.verify_webhook_signature({"paypal-auth-algo": "x"}, {}) is False
    assert recorder.requests == []


def mercadopago(routes, **kwargs):
    recorder = Recorder(routes)
    provider = MercadoPagoProvider(
        "https://mp.test",
        "TEST-access-token",
        transport=httpx.MockTransport(recorder),
        notification_url="https://api.example.test/v1/webhooks/mercadopago",
        return_url="https://api.example.test/v1/checkout/mercadopago/return",
        **kwargs,
    )
    return provider, recorder


@pytest.mark.parametrize(
    "orders,expected",
    [
        ([], None),
        ([{"status": "opened", "payments": []}], None),
        ([{"status": "closed", "payments": [{"status": "approved"}]}], "approved"),
        ([{"status": "opened", "payments": [{"status": "rejected"}, {"status": "approved"}]}], "approved"),
        ([{"status": "closed", "payments": [{"status": "rejected"}]}], "declined"),
        ([{"status": "closed", "payments": [{"status": "refunded"}]}], "cancelled"),
        ([{"status": "expired", "payments": []}], "cancelled"),
        ([{"status": "opened", "payments": [{"status": "in_process"}]}], None),
    ],
)
def test_map_merchant_orders(orders, expected):
    assert map_merchant_orders(orders) == expected


@pytest.mark.asyncio
async def test_mercadopago_create_preference():
    provider, recorder = mercadopago(
        {
            ("POST", "/checkout/preferences"): httpx.Response(
                201, json={"id": "PREF-1", "init_point": "https://mp.test/checkout?pref_id=PREF-1"}
            ),
        },
        webhook_secret="s3cret",
    )
    quote = PriceQuote(amount=Decimal("20000"), currency="ARS", provider="mercadopago")

    result = await provider.create_order(
        quote, "subscription|7|pro|monthly", "1|subscription|||7|pro|monthly||", BUYER, "Pro", "pro"
    )

    assert result == CreatedOrder("PREF-1", "https://mp.test/checkout?pref_id=PREF-1")
    request = recorder.requests[0]
    assert request.headers["Authorization"] == "Bearer TEST-access-token"
    body = json.loads(request.content)
    assert body["items"][0]["unit_price"] == 20000
    assert body["items"][0]["currency_id"] == "ARS"
    assert body["external_reference"] == "1|subscription|||7|pro|monthly||"
    assert body["metadata"]["invoice_id"] == "subscription|7|pro|monthly"
    assert body["notification_url"] == "https://api.example.test/v1/webhooks/mercadopago?secret=s3cret"
    assert body["payer"]["name"] == "Ana"
    assert body["payer"]["surname"] == "Lopez"


@pytest.mark.asyncio
async def test_mercadopago_create_preference_failure():
    provider, _ = mercadopago({("POST", "/checkout/preferences"): httpx.Response(401, json={"message": "invalid token"})})
    quote = PriceQuote(amount=Decimal("20000"), currency="ARS", provider="mercadopago")

    result = await provider.create_order(quote, "a", "b", BUYER, "Pro", "pro")

    assert result == GatewayFailure(401, {"message": "invalid token"})


@pytest.mark.asyncio
async def test_mercadopago_get_order_reads_preference_and_merchant_orders():
    def search(request):
        assert request.url.params["preference_id"] == "PREF-1"
        return httpx.Response(
            200,
            json={
                "elements": [
                    {
                        "id": 55,
                        "status": "closed",
                        "payments": [
                            {"id": 901, "status": "approved", "transaction_amount": 20000, "currency_id": "ARS"}
                        ],
                    }
                ]
            },
        )

    provider, _ = mercadopago({
        ("GET", "/checkout/preferences/PREF-1"): httpx.Response(
            200,
            json={
                "id": "PREF-1",
                "external_reference": "1|subscription|||7|pro|monthly||",
                "metadata": {"invoice_id": "subscription|7|pro|monthly"},
                "items": [{"unit_price": 20000, "currency_id": "ARS"}],
            },
        ),
        ("GET", "/merchant_orders/search"): search,
    })

    snapshot = await provider.get_order("PREF-1")

    assert snapshot.status == "approved"
    assert snapshot.requires_capture is False
    assert snapshot.custom_id == "1|subscription|||7|pro|monthly||"
    assert snapshot.invoice_id == "subscription|7|pro|monthly"
    assert snapshot.payment_id == "901"
    assert snapshot.amount == Decimal("20000")


@pytest.mark.asyncio
async def test_mercadopago_resolves_payment_to_preference():
    provider, _ = mercadopago({
        ("GET", "/v1/payments/901"): httpx.Response(200, json={"id": 901, "order": {"id": 55}}),
        ("GET", "/merchant_orders/55"): httpx.Response(200, json={"id": 55, "preference_id": "PREF-1"}),
    })

    assert await provider.resolve_order_id("901", "payment") == "PREF-1"
    assert await provider.resolve_order_id("55", "merchant_order") == "PREF-1"
    assert await provider.resolve_order_id("1", "chargebacks") is None


@pytest.mark.asyncio
async def test_mercadopago_lookup_error_raises_provider_error():
    provider, _ = mercadopago({("GET", "/v1/payments/901"): httpx.Response(502, text="bad gateway")})

    with pytest.raises(ProviderError) as excinfo:
        await provider.resolve_order_id("901", "payment")
    assert excinfo.value.status_code == 502
