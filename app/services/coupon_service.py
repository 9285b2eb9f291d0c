"""Coupon validation against the authoritative database rule."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol, Union

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

VALIDATION_ERROR = "VALIDATION_ERROR"
UNKNOWN_REASON = "UNKNOWN"
INVALID_FINAL_PRICE = "INVALID_FINAL_PRICE"


class CouponAuthorityError(Exception):
    """The coupon authority could not be reached or returned garbage."""


class CouponAuthority(Protocol):
    async def validate(self, code: str, product_reference: str, price: Decimal, currency: str) -> Optional[dict]:
        ...

    async def redeem(self, coupon_id: str, code: str, product_reference: str, order_reference: str) -> None:
        ...


class SqlCouponAuthority:
    """Calls the ``validate_coupon`` / ``redeem_coupon`` database functions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def validate(self, code: str, product_reference: str, price: Decimal, currency: str) -> Optional[dict]:
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    text("SELECT validate_coupon(:p_code, :p_product, :p_price, :p_currency)"),
                    {"p_code": code, "p_product": product_reference, "p_price": price, "p_currency": currency},
                )
                raw = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise CouponAuthorityError(str(exc)) from exc
        return _as_dict(raw)

    async def redeem(self, coupon_id: str, code: str, product_reference: str, order_reference: str) -> None:
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    text("SELECT redeem_coupon(:p_coupon_id, :p_code, :p_product, :p_order_id)"),
                    {
                        "p_coupon_id": coupon_id,
                        "p_code": code,
                        "p_product": product_reference,
                        "p_order_id": order_reference,
                    },
                )
        except SQLAlchemyError as exc:
            raise CouponAuthorityError(str(exc)) from exc


def _as_dict(raw: Any) -> Optional[dict]:
    if raw is None or isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise CouponAuthorityError("validate_coupon returned non-JSON payload") from exc
        return parsed if isinstance(parsed, dict) else None
    return None


@dataclass(frozen=True)
class CouponApplied:
    final_price: Decimal
    coupon_code: str
    coupon_id: Optional[str] = None


@dataclass(frozen=True)
class CouponFreeAccess:
    coupon_code: str
    coupon_id: Optional[str] = None


@dataclass(frozen=True)
class CouponRejected:
    reason: str


CouponOutcome = Union[CouponApplied, CouponFreeAccess, CouponRejected]


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()


def _parse_price(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price.is_finite() else None


async def validate_and_apply_coupon(
    authority: CouponAuthority,
    code: str,
    product_reference: str,
    original_price: Decimal,
    currency: str,
    buyer_id: Any,
) -> CouponOutcome:
    code = normalize_coupon_code(code)
    try:
        verdict = await authority.validate(code, product_reference, original_price, currency)
    except CouponAuthorityError as exc:
        logger.error("Coupon validation failed for buyer=%s code=%s: %s", buyer_id, code, exc)
        return CouponRejected(VALIDATION_ERROR)

    if not verdict or not verdict.get("ok"):
        reason = str((verdict or {}).get("reason") or UNKNOWN_REASON)
        logger.info("Coupon %s rejected for buyer=%s product=%s: %s", code, buyer_id, product_reference, reason)
        return CouponRejected(reason)

    final_price = _parse_price(verdict.get("final_price"))
    if final_price is None:
        logger.error("Coupon %s approved without a usable final_price: %r", code, verdict.get("final_price"))
        return CouponRejected(INVALID_FINAL_PRICE)

    coupon_id = verdict.get("coupon_id")
    coupon_id = str(coupon_id) if coupon_id is not None else None

    if final_price <= 0:
        logger.info("Coupon %s grants free access to %s for buyer=%s", code, product_reference, buyer_id)
        return CouponFreeAccess(coupon_code=code, coupon_id=coupon_id)

    return CouponApplied(final_price=final_price, coupon_code=code, coupon_id=coupon_id)
