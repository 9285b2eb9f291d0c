"""Course enrollment and organization subscription grants."""

import calendar
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Course, CourseEnrollment, Organization, OrganizationSubscription, Plan
from app.services.identifier_codec import BillingPeriod

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class EntitlementService:
    """Grants are idempotent per payment id and safe to call from every reconcile path."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def grant_course_access(
        self,
        buyer_id: int,
        course_reference: str,
        months: int,
        payment_id: Optional[int] = None,
        source: str = "payment",
    ) -> CourseEnrollment:
        result = await self.db.execute(select(Course).where(Course.slug == course_reference))
        course = result.scalar_one_or_none()
        if course is None:
            raise ValueError(f"Course not found: {course_reference}")

        result = await self.db.execute(
            select(CourseEnrollment)
            .where(CourseEnrollment.user_id == buyer_id, CourseEnrollment.course_id == course.id)
            .with_for_update()
        )
        enrollment = result.scalar_one_or_none()
        if enrollment is not None and payment_id is not None and enrollment.payment_id == payment_id:
            return enrollment

        now = datetime.utcnow()
        new_expiry = add_months(now, months)

        if enrollment is None:
            enrollment = CourseEnrollment(
                user_id=buyer_id,
                course_id=course.id,
                status="active",
                source=source,
                payment_id=payment_id,
                started_at=now,
                expires_at=new_expiry,
            )
            self.db.add(enrollment)
        else:
            if enrollment.expires_at is not None and enrollment.expires_at > new_expiry:
                new_expiry = enrollment.expires_at
            enrollment.status = "active"
            # A grant without a payment keeps the link to the one that paid.
            if payment_id is not None or enrollment.payment_id is None:
                enrollment.source = source
                enrollment.payment_id = payment_id
            enrollment.expires_at = new_expiry
            enrollment.updated_at = now

        await self.db.flush()
        logger.info(
            "Granted course %s to user=%s until %s (payment=%s)",
            course_reference,
            buyer_id,
            new_expiry.isoformat(),
            payment_id,
        )
        return enrollment

    async def activate_subscription(
        self,
        organization_id: int,
        plan_reference: str,
        billing_period: BillingPeriod,
        payment_id: Optional[int] = None,
        amount=None,
        currency: Optional[str] = None,
    ) -> OrganizationSubscription:
        billing_period = BillingPeriod(billing_period)

        result = await self.db.execute(
            select(Organization).where(Organization.id == organization_id).with_for_update()
        )
        organization = result.scalar_one_or_none()
        if organization is None:
            raise ValueError(f"Organization not found: {organization_id}")

        result = await self.db.execute(select(Plan).where(Plan.slug == plan_reference))
        plan = result.scalar_one_or_none()
        if plan is None:
            raise ValueError(f"Plan not found: {plan_reference}")

        if payment_id is not None:
            result = await self.db.execute(
                select(OrganizationSubscription).where(OrganizationSubscription.payment_id == payment_id)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing

        result = await self.db.execute(
            select(OrganizationSubscription).where(
                OrganizationSubscription.organization_id == organization_id,
                OrganizationSubscription.status == "active",
            )
        )
        active = list(result.scalars().all())

        if payment_id is None:
            for subscription in active:
                if subscription.plan_id == plan.id and subscription.billing_period == billing_period.value:
                    return subscription

        now = datetime.utcnow()
        for subscription in active:
            subscription.status = "expired"
            subscription.cancelled_at = now

        months = 12 if billing_period == BillingPeriod.ANNUAL else 1
        subscription = OrganizationSubscription(
            organization_id=organization_id,
            plan_id=plan.id,
            payment_id=payment_id,
            status="active",
            billing_period=billing_period.value,
            amount=amount,
            currency=currency,
            started_at=now,
            expires_at=add_months(now, months),
        )
        self.db.add(subscription)
        organization.plan_id = plan.id
        await self.db.flush()

        logger.info(
            "Activated plan %s (%s) for organization=%s (payment=%s)",
            plan_reference,
            billing_period.value,
            organization_id,
            payment_id,
        )
        return subscription
