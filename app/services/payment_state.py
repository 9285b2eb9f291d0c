"""Payment record status machine.

created -> approved | declined | cancelled | failed_to_create

Every status other than ``created`` is terminal. Transitions are written as a
compare-and-set on the current status so that concurrent reconcilers of the
same order cannot both win.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Payment


class PaymentStatus(str, Enum):
    CREATED = "created"
    APPROVED = "approved"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    FAILED_TO_CREATE = "failed_to_create"


TERMINAL_STATUSES = frozenset({
    PaymentStatus.APPROVED,
    PaymentStatus.DECLINED,
    PaymentStatus.CANCELLED,
    PaymentStatus.FAILED_TO_CREATE,
})


def is_terminal(status) -> bool:
    try:
        return PaymentStatus(status) in TERMINAL_STATUSES
    except ValueError:
        return False


def can_transition(current, new) -> bool:
    try:
        current, new = PaymentStatus(current), PaymentStatus(new)
    except ValueError:
        return False
    return current == PaymentStatus.CREATED and new in TERMINAL_STATUSES


async def transition_payment(
    db: AsyncSession,
    payment: Payment,
    new_status: PaymentStatus,
    provider_payment_id: Optional[str] = None,
    failure_reason: Optional[str] = None,
) -> bool:
    """Move ``payment`` out of ``created``. Returns False if another writer got there first."""
    if not can_transition(payment.status, new_status):
        return False

    now = datetime.utcnow()
    values = {"status": PaymentStatus(new_status).value, "updated_at": now, "reconciled_at": now}
    if provider_payment_id is not None:
        values["provider_payment_id"] = provider_payment_id
    if failure_reason is not None:
        values["failure_reason"] = failure_reason[:500]

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.CREATED.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    for key, value in values.items():
        setattr(payment, key, value)
    return True
