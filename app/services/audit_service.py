"""Append-only payment event log."""

import logging
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import PaymentEvent

logger = logging.getLogger(__name__)

OUTCOME_IGNORED_UNAUTHENTICATED = "ignored_unauthenticated"
OUTCOME_IGNORED_IRRELEVANT = "ignored_irrelevant"
OUTCOME_UNKNOWN_ORDER = "unknown_order"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_UNDECODABLE = "undecodable"
OUTCOME_PENDING = "pending"
OUTCOME_TRANSITIONED = "transitioned"
OUTCOME_COUPON_REDEMPTION_FAILED = "coupon_redemption_failed"


async def record_payment_event(
    db: AsyncSession,
    provider: str,
    event_type: str,
    outcome: str,
    provider_event_id: Optional[str] = None,
    provider_order_id: Optional[str] = None,
    payment_id: Optional[int] = None,
    detail: Optional[str] = None,
    raw_payload: Any = None,
) -> PaymentEvent:
    event = PaymentEvent(
        provider=provider,
        event_type=(event_type or "unknown")[:100],
        outcome=outcome,
        provider_event_id=provider_event_id,
        provider_order_id=provider_order_id,
        payment_id=payment_id,
        detail=detail[:1000] if detail else None,
        raw_payload=raw_payload if isinstance(raw_payload, (dict, list)) else None,
    )
    db.add(event)
    await db.flush()
    logger.debug("payment_event provider=%s order=%s outcome=%s", provider, provider_order_id, outcome)
    return event


async def list_payment_events(
    db: AsyncSession,
    provider: Optional[str] = None,
    outcome: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[PaymentEvent]:
    stmt = select(PaymentEvent)
    if provider:
        stmt = stmt.where(PaymentEvent.provider == provider)
    if outcome:
        stmt = stmt.where(PaymentEvent.outcome == outcome)
    result = await db.execute(stmt.order_by(PaymentEvent.created_at.desc(), PaymentEvent.id.desc()).offset(offset).limit(limit))
    return list(result.scalars().all())
