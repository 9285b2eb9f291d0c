"""Dependencies for v1 API routes."""

from typing import Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.rate_limit import enforce_rate_limit
from app.core.security import decode_access_token
from app.database import get_db
from app.models import User
from app.services.coupon_service import CouponAuthority, SqlCouponAuthority
from app.services.entitlement_service import EntitlementService
from app.services.payment_service import SUPPORTED_PROVIDERS, PaymentProvider, get_payment_providers
from app.services.webhook_verification import WebhookVerifier, get_webhook_verifier

security = HTTPBearer()
settings = get_settings()


async def get_current_v1_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    result = await db.execute(select(User).where(User.auth_id == str(sub)))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def require_superadmin(
    current_user: User = Depends(get_current_v1_user),
) -> User:
    if current_user.role not in {"superadmin", "admin"}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Superadmin access required")
    return current_user


async def checkout_rate_limit(current_user: User = Depends(get_current_v1_user)) -> User:
    await enforce_rate_limit(
        f"checkout:{current_user.id}",
        settings.CHECKOUT_RATE_LIMIT,
        settings.CHECKOUT_RATE_WINDOW_SECONDS,
    )
    return current_user


def get_providers() -> Dict[str, PaymentProvider]:
    return get_payment_providers()


def get_coupon_authority(db: AsyncSession = Depends(get_db)) -> CouponAuthority:
    return SqlCouponAuthority(db)


def get_entitlements(db: AsyncSession = Depends(get_db)) -> EntitlementService:
    return EntitlementService(db)


def get_webhook_verifiers() -> Dict[str, WebhookVerifier]:
    return {name: get_webhook_verifier(name) for name in SUPPORTED_PROVIDERS}
