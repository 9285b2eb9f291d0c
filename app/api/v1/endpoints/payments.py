"""v1 payment history and audit endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.v1_dependencies import get_current_v1_user, require_superadmin
from app.database import get_db
from app.models import Payment, User
from app.schemas_v1 import PaymentEventListResponse, PaymentEventResponse, PaymentListResponse, PaymentResponse
from app.services.audit_service import list_payment_events

router = APIRouter()


@router.get("/me", response_model=PaymentListResponse)
async def my_payments(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    current_user: User = Depends(get_current_v1_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Payment)
        .where(Payment.buyer_id == current_user.id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return PaymentListResponse(items=[PaymentResponse.model_validate(p) for p in result.scalars().all()])


@router.get("", response_model=PaymentListResponse)
async def list_payments(
    status: Optional[str] = Query(default=None),
    provider: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: User = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Payment)
    if status:
        stmt = stmt.where(Payment.status == status)
    if provider:
        stmt = stmt.where(Payment.provider == provider)
    result = await db.execute(stmt.order_by(Payment.created_at.desc(), Payment.id.desc()).offset(offset).limit(limit))
    return PaymentListResponse(items=[PaymentResponse.model_validate(p) for p in result.scalars().all()])


@router.get("/events", response_model=PaymentEventListResponse)
async def list_events(
    provider: Optional[str] = Query(default=None),
    outcome: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _: User = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_payment_events(db, provider=provider, outcome=outcome, limit=limit, offset=offset)
    return PaymentEventListResponse(items=[PaymentEventResponse.model_validate(r) for r in rows])
