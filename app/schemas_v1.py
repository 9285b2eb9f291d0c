"""Pydantic schemas for v1 checkout and payment APIs."""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.services.identifier_codec import BillingPeriod, ProductType

# Values embedded in provider identifiers must never contain the separator.
SLUG_PATTERN = r"^[A-Za-z0-9_-]+$"


class CheckoutRequest(BaseModel):
    product_type: ProductType
    product_reference: str = Field(..., min_length=1, max_length=120, pattern=SLUG_PATTERN)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    provider: Literal["paypal", "mercadopago"]
    coupon_code: Optional[str] = Field(default=None, max_length=50, pattern=SLUG_PATTERN)
    billing_period: Optional[BillingPeriod] = None
    organization_id: Optional[int] = Field(default=None, ge=1)

    @field_validator("coupon_code", mode="before")
    @classmethod
    def blank_coupon_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value.strip() if isinstance(value, str) else value

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def validate_subscription_fields(self):
        if self.product_type == ProductType.SUBSCRIPTION:
            if self.organization_id is None:
                raise ValueError("organization_id is required for subscriptions")
            if self.billing_period is None:
                raise ValueError("billing_period is required for subscriptions")
        return self


class CheckoutRedirectResponse(BaseModel):
    status: Literal["redirect"] = "redirect"
    redirect_url: str
    payment_id: int
    provider_order_id: str


class CheckoutFreeAccessResponse(BaseModel):
    status: Literal["free_access"] = "free_access"
    product_type: ProductType
    product_reference: str


class CheckoutErrorResponse(BaseModel):
    error: str
    reason: Optional[str] = None


class CheckoutQuoteResponse(BaseModel):
    original_amount: Decimal
    amount: Decimal
    currency: str
    coupon_code: Optional[str] = None
    free_access: bool


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    provider_order_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    product_type: str
    buyer_id: int
    amount: Decimal
    currency: str
    status: str
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    reconciled_at: Optional[datetime] = None


class PaymentListResponse(BaseModel):
    items: List[PaymentResponse]


class PaymentEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    event_type: str
    outcome: str
    provider_event_id: Optional[str] = None
    provider_order_id: Optional[str] = None
    payment_id: Optional[int] = None
    detail: Optional[str] = None
    raw_payload: Optional[Any] = None
    created_at: datetime


class PaymentEventListResponse(BaseModel):
    items: List[PaymentEventResponse]


class WebhookAck(BaseModel):
    received: bool
