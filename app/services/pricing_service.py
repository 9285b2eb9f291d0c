"""Course and plan price resolution with USD->ARS conversion."""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Course, ExchangeRate, Plan
from app.services.identifier_codec import DEFAULT_COURSE_MONTHS, BillingPeriod

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
SUPPORTED_CURRENCIES = {"USD", "ARS"}


class PriceFailureKind(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_PRICE = "invalid_price"
    EXCHANGE_RATE_UNAVAILABLE = "exchange_rate_unavailable"
    UNSUPPORTED_CURRENCY = "unsupported_currency"


@dataclass(frozen=True)
class PriceQuote:
    amount: Decimal
    currency: str
    provider: str
    months: Optional[int] = None
    billing_period: Optional[BillingPeriod] = None

    def with_amount(self, amount: Decimal) -> "PriceQuote":
        return replace(self, amount=amount)


@dataclass(frozen=True)
class PriceFailure:
    kind: PriceFailureKind
    detail: str = ""


PriceResult = Union[PriceQuote, PriceFailure]


def to_positive_decimal(value: Any) -> Optional[Decimal]:
    """Return ``value`` as a finite Decimal > 0, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


async def get_active_rate(db: AsyncSession, from_currency: str, to_currency: str) -> Optional[Decimal]:
    result = await db.execute(
        select(ExchangeRate.rate)
        .where(
            ExchangeRate.from_currency == from_currency,
            ExchangeRate.to_currency == to_currency,
            ExchangeRate.is_active == True,
        )
        .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
        .limit(1)
    )
    rate = result.scalar_one_or_none()
    return to_positive_decimal(rate)


async def _convert(db: AsyncSession, base_amount: Decimal, currency: str) -> Union[Decimal, PriceFailure]:
    if currency == BASE_CURRENCY:
        return base_amount

    rate = await get_active_rate(db, BASE_CURRENCY, currency)
    if rate is None:
        logger.error("No active exchange rate %s->%s", BASE_CURRENCY, currency)
        return PriceFailure(PriceFailureKind.EXCHANGE_RATE_UNAVAILABLE, f"{BASE_CURRENCY}->{currency}")

    converted = to_positive_decimal(base_amount * rate)
    if converted is None:
        return PriceFailure(PriceFailureKind.INVALID_PRICE, "converted amount is not positive")
    return converted


async def get_course_price(
    db: AsyncSession,
    product_reference: str,
    currency: str,
    provider: str,
) -> PriceResult:
    currency = currency.upper()
    if currency not in SUPPORTED_CURRENCIES:
        return PriceFailure(PriceFailureKind.UNSUPPORTED_CURRENCY, currency)

    result = await db.execute(select(Course).where(Course.slug == product_reference))
    course = result.scalar_one_or_none()
    if course is None or not course.is_active:
        return PriceFailure(PriceFailureKind.NOT_FOUND, f"course {product_reference} not found or inactive")

    base_amount = to_positive_decimal(course.price)
    if base_amount is None:
        return PriceFailure(PriceFailureKind.INVALID_PRICE, f"course {product_reference} has no valid price")

    amount = await _convert(db, base_amount, currency)
    if isinstance(amount, PriceFailure):
        return amount

    return PriceQuote(amount=amount, currency=currency, provider=provider, months=DEFAULT_COURSE_MONTHS)


async def get_plan_price(
    db: AsyncSession,
    plan_reference: str,
    currency: str,
    billing_period: BillingPeriod,
    provider: str,
) -> PriceResult:
    currency = currency.upper()
    if currency not in SUPPORTED_CURRENCIES:
        return PriceFailure(PriceFailureKind.UNSUPPORTED_CURRENCY, currency)

    result = await db.execute(select(Plan).where(Plan.slug == plan_reference))
    plan = result.scalar_one_or_none()
    if plan is None or not plan.is_active:
        return PriceFailure(PriceFailureKind.NOT_FOUND, f"plan {plan_reference} not found or inactive")

    raw = plan.annual_amount if billing_period == BillingPeriod.ANNUAL else plan.monthly_amount
    base_amount = to_positive_decimal(raw)
    if base_amount is None:
        return PriceFailure(
            PriceFailureKind.INVALID_PRICE,
            f"plan {plan_reference} has no valid {BillingPeriod(billing_period).value} price",
        )

    amount = await _convert(db, base_amount, currency)
    if isinstance(amount, PriceFailure):
        return amount

    return PriceQuote(
        amount=amount,
        currency=currency,
        provider=provider,
        billing_period=BillingPeriod(billing_period),
    )
