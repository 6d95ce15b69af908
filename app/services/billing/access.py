"""Content access policy derived from subscription state.

A subscription grants access while it is live (trialing, active or
past_due). A canceled subscription keeps granting access until the end of
the period the user already paid for. Expired and unpaid never do.
"""
from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from app.models.plan import Plan
from app.services.common import as_utc, utcnow


def has_access(subscription: Subscription, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if subscription.status in LIVE_SUBSCRIPTION_STATUSES:
        return True
    if subscription.status == SubscriptionStatus.canceled:
        period_end = as_utc(subscription.current_period_end)
        return period_end is not None and period_end > now
    return False


def access_tier(db: Session, user_id: UUID, now: datetime | None = None) -> int:
    """Highest plan tier the user can currently access, 0 when none."""
    now = now or utcnow()
    stmt = (
        select(Subscription, Plan.tier_level)
        .join(Plan, Plan.id == Subscription.plan_id)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(
                [*LIVE_SUBSCRIPTION_STATUSES, SubscriptionStatus.canceled]
            ),
        )
    )
    tiers = [tier for sub, tier in db.execute(stmt).all() if has_access(sub, now)]
    return max(tiers, default=0)
