"""Purchase-intent encoding for provider invoice/custom id fields.

Both providers carry two free-text fields on an order and hand them back
unchanged on status lookups and webhooks. The formats are pipe-delimited and
positional, with no escaping, so every embedded field must be free of ``|``:

    invoice id  subscription|{org_id}|{plan_slug}|{billing_period}
                course|{user_id}|{course_slug}|{months}
    custom id   buyer|type|product|months|org|plan|period|coupon_code|coupon_id

Decoders never raise; anything unrecognised comes back with
``product_type=None`` and callers must treat it as unprocessable.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, List, Optional

SEPARATOR = "|"
DEFAULT_COURSE_MONTHS = 12
MAX_PROVIDER_FIELD_LENGTH = 127
CUSTOM_ID_FIELDS = 9


class ProductType(str, Enum):
    COURSE = "course"
    SUBSCRIPTION = "subscription"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


@dataclass(frozen=True)
class PurchaseIntent:
    product_type: Optional[ProductType] = None
    buyer_id: Optional[str] = None
    product_reference: Optional[str] = None
    months: Optional[int] = None
    organization_id: Optional[str] = None
    billing_period: Optional[BillingPeriod] = None
    coupon_code: Optional[str] = None
    coupon_id: Optional[str] = None

    @property
    def is_processable(self) -> bool:
        return self.product_type is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["product_type"] = self.product_type.value if self.product_type else None
        data["billing_period"] = self.billing_period.value if self.billing_period else None
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PurchaseIntent":
        data = data or {}
        return cls(
            product_type=_parse_enum(ProductType, data.get("product_type")),
            buyer_id=_text(data.get("buyer_id")),
            product_reference=_text(data.get("product_reference")),
            months=_parse_int(data.get("months")),
            organization_id=_text(data.get("organization_id")),
            billing_period=_parse_enum(BillingPeriod, data.get("billing_period")),
            coupon_code=_text(data.get("coupon_code")),
            coupon_id=_text(data.get("coupon_id")),
        )


UNPROCESSABLE = PurchaseIntent()


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value or None


def _parse_enum(enum_cls, value: Any):
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _field(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, Enum):
        value = value.value
    text = str(value)
    if SEPARATOR in text:
        raise ValueError(f"Identifier field must not contain '{SEPARATOR}': {text!r}")
    return text


def _join(fields: List[Any]) -> str:
    return SEPARATOR.join(_field(f) for f in fields)


def _part(parts: List[str], index: int) -> Optional[str]:
    if index < len(parts) and parts[index] != "":
        return parts[index]
    return None


def encode_invoice_id(intent: PurchaseIntent) -> str:
    if intent.product_type == ProductType.SUBSCRIPTION:
        return _join([
            ProductType.SUBSCRIPTION,
            intent.organization_id,
            intent.product_reference,
            intent.billing_period,
        ])
    months = intent.months if intent.months is not None else DEFAULT_COURSE_MONTHS
    return _join([ProductType.COURSE, intent.buyer_id, intent.product_reference, months])


def encode_custom_id(intent: PurchaseIntent) -> str:
    is_subscription = intent.product_type == ProductType.SUBSCRIPTION
    return _join([
        intent.buyer_id,
        intent.product_type,
        None if is_subscription else intent.product_reference,
        intent.months,
        intent.organization_id,
        intent.product_reference if is_subscription else None,
        intent.billing_period,
        intent.coupon_code,
        intent.coupon_id,
    ])


def decode_invoice_id(value: Any) -> PurchaseIntent:
    if not isinstance(value, str) or not value:
        return UNPROCESSABLE
    parts = value.split(SEPARATOR)
    tag = parts[0]

    if tag == ProductType.SUBSCRIPTION.value:
        return PurchaseIntent(
            product_type=ProductType.SUBSCRIPTION,
            organization_id=_part(parts, 1),
            product_reference=_part(parts, 2),
            billing_period=_parse_enum(BillingPeriod, _part(parts, 3)),
        )
    if tag == ProductType.COURSE.value:
        return PurchaseIntent(
            product_type=ProductType.COURSE,
            buyer_id=_part(parts, 1),
            product_reference=_part(parts, 2),
            months=_parse_int(_part(parts, 3)),
        )
    return UNPROCESSABLE


def decode_custom_id(value: Any) -> PurchaseIntent:
    if not isinstance(value, str) or not value:
        return UNPROCESSABLE
    parts = value.split(SEPARATOR)
    product_type = _parse_enum(ProductType, _part(parts, 1))
    if product_type == ProductType.SUBSCRIPTION:
        product_reference = _part(parts, 5) or _part(parts, 2)
    else:
        product_reference = _part(parts, 2) or _part(parts, 5)

    return PurchaseIntent(
        product_type=product_type,
        buyer_id=_part(parts, 0),
        product_reference=product_reference,
        months=_parse_int(_part(parts, 3)),
        organization_id=_part(parts, 4),
        billing_period=_parse_enum(BillingPeriod, _part(parts, 6)),
        coupon_code=_part(parts, 7),
        coupon_id=_part(parts, 8),
    )


def decode_identifiers(custom_id: Any, invoice_id: Any) -> PurchaseIntent:
    """Prefer the richer custom id; fall back to the invoice id."""
    intent = decode_custom_id(custom_id)
    if intent.is_processable:
        return intent
    return decode_invoice_id(invoice_id)
