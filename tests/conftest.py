import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PUBLIC_API_URL", "https://api.example.test")
os.environ.setdefault("FRONTEND_URL", "https://app.example.test")

from dataclasses import replace
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.models import Course, ExchangeRate, Organization, OrganizationMember, Plan, User
from app.services.coupon_service import CouponAuthorityError
from app.services.entitlement_service import EntitlementService
from app.services.payment_service import (
    CreatedOrder,
    PaymentProvider,
    ProviderCaptureResult,
    ProviderError,
    ProviderOrderSnapshot,
)


class FakeCouponAuthority:
    """In-memory stand-in for the validate_coupon / redeem_coupon functions."""

    def __init__(self):
        self.coupons = {}
        self.fail = False
        self.fail_redeem = False
        self.validated = []
        self.redeemed = []

    def add_percent(self, code, percent, coupon_id):
        self.coupons[code] = lambda price: {
            "ok": True,
            "final_price": str(price * (Decimal(100) - Decimal(percent)) / Decimal(100)),
            "coupon_id": coupon_id,
        }

    def add_verdict(self, code, verdict):
        self.coupons[code] = lambda price: verdict

    async def validate(self, code, product_reference, price, currency):
        self.validated.append((code, product_reference, price, currency))
        if self.fail:
            raise CouponAuthorityError("coupon authority unavailable")
        rule = self.coupons.get(code)
        if rule is None:
            return {"ok": False, "reason": "COUPON_NOT_FOUND"}
        return rule(price)

    async def redeem(self, coupon_id, code, product_reference, order_reference):
        if self.fail_redeem:
            raise CouponAuthorityError("redeem failed")
        self.redeemed.append((coupon_id, code, product_reference, order_reference))


class FakeProvider(PaymentProvider):
    """Gateway double that keeps orders in memory and counts calls."""

    def __init__(self, name):
        super().__init__("https://provider.test")
        self.name = name
        self.orders = {}
        self.created = []
        self.captured = []
        self.create_result = None
        self.fail_get = False
        self.fail_capture = False
        self.capture_status = "approved"
        self.resolved = {}

    async def create_order(self, quote, invoice_id, custom_id, buyer, title, product_reference):
        self.created.append(
            {"quote": quote, "invoice_id": invoice_id, "custom_id": custom_id, "buyer": buyer, "title": title}
        )
        if self.create_result is not None:
            return self.create_result
        order_id = f"{self.name.upper()}-{len(self.created)}"
        self.orders[order_id] = ProviderOrderSnapshot(
            provider=self.name,
            order_id=order_id,
            raw_status="CREATED",
            status=None,
            invoice_id=invoice_id,
            custom_id=custom_id,
            amount=quote.amount,
            currency=quote.currency,
        )
        return CreatedOrder(order_id=order_id, redirect_url=f"https://provider.test/approve/{order_id}")

    def set_state(self, order_id, **changes):
        self.orders[order_id] = replace(self.orders[order_id], **changes)

    async def get_order(self, order_id):
        if self.fail_get:
            raise ProviderError("provider unavailable", status_code=503)
        if order_id not in self.orders:
            raise ProviderError(f"order {order_id} not found", status_code=404)
        return self.orders[order_id]

    async def capture(self, order_id):
        self.captured.append(order_id)
        if self.fail_capture:
            raise ProviderError("capture failed", status_code=500)
        self.set_state(order_id, raw_status="COMPLETED", status=self.capture_status, requires_capture=False, payment_id="CAP-1")
        snapshot = self.orders[order_id]
        return ProviderCaptureResult(
            order_id=order_id,
            raw_status=snapshot.raw_status,
            status=snapshot.status,
            payment_id=snapshot.payment_id,
        )

    async def resolve_order_id(self, resource_id, topic=None):
        if self.resolved:
            return self.resolved.get(resource_id)
        return resource_id


class FakeVerifier:
    def __init__(self, accept=True):
        self.accept = accept
        self.seen = []

    async def verify(self, notification):
        self.seen.append(notification)
        return self.accept


@pytest_asyncio.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest_asyncio.fixture
async def catalog(db):
    """Buyer, owner organization, one course, one plan and an active USD->ARS rate."""
    buyer = User(auth_id="auth-u1", email="buyer@example.com", full_name="Ana Lopez", role="user")
    admin = User(auth_id="auth-admin", email="admin@example.com", full_name="Ops", role="superadmin")
    plan = Plan(slug="pro", name="Pro", monthly_amount=Decimal("20"), annual_amount=Decimal("200"))
    course = Course(slug="archicad-101", title="ArchiCAD 101", price=Decimal("50"))
    db.add_all([buyer, admin, plan, course])
    await db.flush()

    organization = Organization(name="Estudio Norte")
    db.add(organization)
    await db.flush()
    db.add(OrganizationMember(organization_id=organization.id, user_id=buyer.id, role="owner"))
    db.add(ExchangeRate(from_currency="USD", to_currency="ARS", rate=Decimal("1000")))
    await db.flush()

    return {"buyer": buyer, "admin": admin, "plan": plan, "course": course, "organization": organization}


@pytest.fixture
def coupons():
    return FakeCouponAuthority()


@pytest.fixture
def paypal():
    return FakeProvider("paypal")


@pytest.fixture
def mercadopago():
    return FakeProvider("mercadopago")


@pytest.fixture
def providers(paypal, mercadopago):
    return {"paypal": paypal, "mercadopago": mercadopago}


@pytest.fixture
def entitlements(db):
    return EntitlementService(db)


@pytest.fixture
def verifier():
    return FakeVerifier()
