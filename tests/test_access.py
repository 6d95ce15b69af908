from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from app.models.billing import SubscriptionStatus
from app.models.plan import Plan
from app.services.billing.access import access_tier, has_access

NOW = datetime.now(UTC)


@pytest.mark.parametrize(
    "status, expected",
    [
        (SubscriptionStatus.trialing, True),
        (SubscriptionStatus.active, True),
        (SubscriptionStatus.past_due, True),
        (SubscriptionStatus.unpaid, False),
        (SubscriptionStatus.expired, False),
    ],
)
def test_has_access_by_status(make_subscription, status, expected) -> None:
    sub = make_subscription(status=status)
    assert has_access(sub, NOW) is expected


def test_canceled_keeps_access_until_period_end(make_subscription) -> None:
    sub = make_subscription(
        status=SubscriptionStatus.canceled,
        current_period_end=NOW + timedelta(days=2),
    )
    assert has_access(sub, NOW) is True
    assert has_access(sub, NOW + timedelta(days=3)) is False


def test_access_tier_picks_highest_accessible(db_session, user, plan, make_subscription) -> None:
    premium = Plan(
        name="Enterprise",
        slug="enterprise",
        price=9999,
        tier_level=3,
        stripe_price_id="price_enterprise_monthly",
    )
    db_session.add(premium)
    db_session.commit()
    make_subscription(status=SubscriptionStatus.active)
    make_subscription(
        plan_id=premium.id,
        status=SubscriptionStatus.canceled,
        current_period_end=NOW + timedelta(days=5),
    )

    assert access_tier(db_session, user.id, NOW) == 3
    assert access_tier(db_session, user.id, NOW + timedelta(days=6)) == plan.tier_level


def test_access_tier_zero_without_subscription(db_session, user) -> None:
    assert access_tier(db_session, user.id, NOW) == 0
