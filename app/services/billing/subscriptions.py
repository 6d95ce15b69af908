import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import (
    LIVE_SUBSCRIPTION_STATUSES,
    CancelReason,
    Subscription,
    SubscriptionStatus,
)
from app.models.plan import Plan
from app.schemas.billing_events import SubscriptionObject
from app.services.billing.errors import InvalidTransition
from app.services.billing.state_machine import Transition, can_transition
from app.services.common import from_timestamp, utcnow

logger = logging.getLogger(__name__)


class Subscriptions:
    @staticmethod
    def get_by_provider_id(db: Session, provider_subscription_id: str) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.provider_subscription_id == provider_subscription_id
        )
        return db.scalars(stmt).first()

    @staticmethod
    def find_live_for_user(db: Session, user_id: UUID) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.status.in_(list(LIVE_SUBSCRIPTION_STATUSES)),
        )
        return db.scalars(stmt).first()

    @staticmethod
    def create_from_checkout(
        db: Session,
        *,
        user_id: UUID,
        plan: Plan,
        snapshot: SubscriptionObject,
        status: SubscriptionStatus,
    ) -> Subscription:
        item = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            provider_subscription_id=snapshot.id,
            status=status,
        )
        Subscriptions.sync_from_provider(item, snapshot)
        db.add(item)
        db.flush()
        logger.info(
            "Created Subscription: %s (%s) for user %s",
            item.id,
            status.value,
            user_id,
        )
        return item

    @staticmethod
    def sync_from_provider(item: Subscription, snapshot: SubscriptionObject) -> None:
        """Copy provider-owned fields; status is left to the state machine."""
        if snapshot.customer:
            item.provider_customer_id = snapshot.customer
        item.current_period_start = from_timestamp(snapshot.current_period_start)
        item.current_period_end = from_timestamp(snapshot.current_period_end)
        item.trial_start = from_timestamp(snapshot.trial_start)
        item.trial_end = from_timestamp(snapshot.trial_end)
        item.cancel_at_period_end = snapshot.cancel_at_period_end
        item.canceled_at = from_timestamp(snapshot.canceled_at)
        # Event payloads carry only the payment method id; keep the last card seen.
        if snapshot.payment_method:
            item.payment_method = snapshot.payment_method
        if snapshot.cancel_reason:
            item.cancel_reason = CancelReason(snapshot.cancel_reason)

    @staticmethod
    def apply_proration(item: Subscription, credit: int) -> None:
        logger.info("Subscription %s: proration credit %s", item.id, credit)
        item.proration_credit = credit
        item.proration_applied_at = utcnow()

    @staticmethod
    def apply_transition(item: Subscription, transition: Transition) -> bool:
        if transition.note:
            logger.warning(
                "Subscription %s: %s", item.id, transition.note
            )
        if not transition.changed:
            return False
        if not can_transition(item.status, transition.status):
            raise InvalidTransition(
                item.status.value, transition.status.value, "apply_transition"
            )
        logger.info(
            "Subscription %s: %s -> %s",
            item.id,
            item.status.value,
            transition.status.value,
        )
        item.status = transition.status
        if transition.status == SubscriptionStatus.canceled and item.canceled_at is None:
            item.canceled_at = utcnow()
        return True

    # ── Lifecycle queries ────────────────────────────────

    @staticmethod
    def due_for_expiry(db: Session, now: datetime, limit: int) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.current_period_end < now,
                (
                    Subscription.status.in_(
                        [SubscriptionStatus.active, SubscriptionStatus.past_due]
                    )
                    & Subscription.cancel_at_period_end.is_(True)
                )
                | (Subscription.status == SubscriptionStatus.canceled),
            )
            .order_by(Subscription.current_period_end.asc())
            .limit(limit)
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def renewing_between(
        db: Session, start: datetime, end: datetime, limit: int
    ) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.active,
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end >= start,
                Subscription.current_period_end < end,
            )
            .order_by(Subscription.current_period_end.asc())
            .limit(limit)
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def trials_ending_between(
        db: Session, start: datetime, end: datetime, limit: int
    ) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.trialing,
                Subscription.trial_end >= start,
                Subscription.trial_end < end,
            )
            .order_by(Subscription.trial_end.asc())
            .limit(limit)
        )
        return list(db.scalars(stmt).all())

    @staticmethod
    def expired_before(db: Session, cutoff: datetime, limit: int) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.expired,
                Subscription.updated_at < cutoff,
            )
            .limit(limit)
        )
        return list(db.scalars(stmt).all())


subscriptions = Subscriptions()
