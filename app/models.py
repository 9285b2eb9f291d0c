"""SQLAlchemy database models for the checkout service."""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """Buyer profile mapped from the auth provider subject."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    auth_id = Column(String(64), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=True)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default="user")  # user | admin | superadmin
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    memberships = relationship("OrganizationMember", back_populates="user")
    enrollments = relationship("CourseEnrollment", back_populates="user")
    payments = relationship("Payment", back_populates="buyer")


class Organization(Base):
    """Tenant that owns a subscription plan."""

    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    plan = relationship("Plan")
    members = relationship("OrganizationMember", back_populates="organization")
    subscriptions = relationship("OrganizationSubscription", back_populates="organization")


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String(20), nullable=False, default="member")  # member | admin | owner
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    organization = relationship("Organization", back_populates="members")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )


class Course(Base):
    """Course catalog entry; price is the USD base price."""

    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(120), unique=True, index=True, nullable=False)
    title = Column(String(255), nullable=False)
    short_description = Column(String(500), nullable=True)
    price = Column(Numeric, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    enrollments = relationship("CourseEnrollment", back_populates="course")


class Plan(Base):
    """Subscription plan catalog with USD base amounts."""

    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    slug = Column(String(120), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    monthly_amount = Column(Numeric, nullable=True)
    annual_amount = Column(Numeric, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"

    id = Column(Integer, primary_key=True, index=True)
    from_currency = Column(String(3), nullable=False)
    to_currency = Column(String(3), nullable=False)
    rate = Column(Numeric, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_rates_pair_active", "from_currency", "to_currency", "is_active"),
    )


class Payment(Base):
    """One row per provider order attempt."""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False)  # paypal | mercadopago
    provider_order_id = Column(String(255), nullable=True)
    provider_payment_id = Column(String(255), nullable=True)
    product_type = Column(String(20), nullable=False)  # course | subscription
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    purchase_intent = Column(JSONType, nullable=False)
    invoice_id = Column(String(255), nullable=False)
    custom_id = Column(String(255), nullable=False)
    amount = Column(Numeric, nullable=False)
    currency = Column(String(3), nullable=False)
    # created | approved | declined | cancelled | failed_to_create
    status = Column(String(20), nullable=False, default="created")
    failure_reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    reconciled_at = Column(DateTime, nullable=True)

    buyer = relationship("User", back_populates="payments")
    events = relationship("PaymentEvent", back_populates="payment")

    __table_args__ = (
        UniqueConstraint("provider", "provider_order_id", name="uq_payment_provider_order"),
        Index("idx_payments_buyer_created", "buyer_id", "created_at"),
        Index("idx_payments_status", "status"),
    )


class PaymentEvent(Base):
    """Append-only audit trail of notifications and reconciliation decisions."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False)
    event_type = Column(String(100), nullable=False)
    outcome = Column(String(40), nullable=False)
    provider_event_id = Column(String(255), nullable=True)
    provider_order_id = Column(String(255), nullable=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    detail = Column(String(1000), nullable=True)
    raw_payload = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    payment = relationship("Payment", back_populates="events")

    __table_args__ = (
        Index("idx_events_order", "provider", "provider_order_id"),
        Index("idx_events_outcome_created", "outcome", "created_at"),
    )


class CourseEnrollment(Base):
    __tablename__ = "course_enrollments"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    source = Column(String(20), nullable=False, default="payment")  # payment | coupon
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="enrollments")
    course = relationship("Course", back_populates="enrollments")

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
    )


class OrganizationSubscription(Base):
    __tablename__ = "organization_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, unique=True)
    status = Column(String(20), nullable=False, default="active")  # active | expired
    billing_period = Column(String(10), nullable=False)  # monthly | annual
    amount = Column(Numeric, nullable=True)
    currency = Column(String(3), nullable=True)
    started_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    organization = relationship("Organization", back_populates="subscriptions")
    plan = relationship("Plan")

    __table_args__ = (
        Index("idx_org_sub_status", "organization_id", "status"),
    )
