"""Subscription lifecycle rules.

Pure functions: each takes the current status plus the trigger's inputs
and returns a :class:`Transition` describing the next status and the
notifications it implies. Nothing here touches the database.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.models.billing import SubscriptionStatus
from app.models.scheduler import EmailJobType
from app.services.billing.errors import InvalidTransition
from app.services.common import as_utc

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.trialing: frozenset({S.active, S.past_due, S.unpaid, S.canceled, S.expired}),
    S.active: frozenset({S.past_due, S.unpaid, S.canceled, S.expired}),
    S.past_due: frozenset({S.active, S.unpaid, S.canceled, S.expired}),
    S.unpaid: frozenset({S.active, S.canceled, S.expired}),
    S.canceled: frozenset({S.expired}),
    S.expired: frozenset(),
}

_PROVIDER_STATUS_MAP = {
    "trialing": S.trialing,
    "active": S.active,
    "past_due": S.past_due,
    "unpaid": S.unpaid,
    "canceled": S.canceled,
    "incomplete_expired": S.expired,
}


@dataclass(frozen=True)
class Transition:
    previous: SubscriptionStatus | None
    status: SubscriptionStatus
    effects: tuple[EmailJobType, ...] = ()
    note: str | None = None

    @property
    def changed(self) -> bool:
        return self.previous != self.status


def map_provider_status(value: str | None) -> SubscriptionStatus | None:
    if value is None:
        return None
    return _PROVIDER_STATUS_MAP.get(value)


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _unchanged(current: SubscriptionStatus, note: str | None = None) -> Transition:
    return Transition(previous=current, status=current, note=note)


def on_checkout_completed(provider_status: str) -> Transition:
    """Initial status for a subscription created by checkout."""
    status = map_provider_status(provider_status)
    if status in (S.trialing, S.active):
        return Transition(
            previous=None,
            status=status,
            effects=(EmailJobType.subscription_confirmation,),
        )
    if status in (S.past_due, S.unpaid):
        return Transition(previous=None, status=status)
    raise InvalidTransition(None, provider_status, "checkout.session.completed")


def on_invoice_paid(
    current: SubscriptionStatus,
    provider_status: str | None = None,
    trial_invoice: bool = False,
) -> Transition:
    """Status after a paid invoice.

    ``provider_status`` is the provider's current view when it was fetched;
    ``trial_invoice`` marks the zero-amount invoice issued when a trial starts.
    Without a provider status a paid invoice activates the subscription.
    """
    if current in (S.canceled, S.expired):
        return _unchanged(current, note=f"payment received for {current.value} subscription")
    target = map_provider_status(provider_status)
    if current == S.trialing and (trial_invoice or target == S.trialing):
        return _unchanged(current)
    if target is not None and target != S.active:
        if target == current:
            return _unchanged(current)
        if not can_transition(current, target):
            return _unchanged(
                current, note=f"refused {current.value} -> {target.value} from provider"
            )
        return Transition(previous=current, status=target)
    if current == S.active:
        return _unchanged(current)
    return Transition(previous=current, status=S.active)


def on_invoice_failed(current: SubscriptionStatus) -> Transition:
    if current in (S.trialing, S.active, S.past_due):
        return Transition(
            previous=current,
            status=S.past_due,
            effects=(EmailJobType.payment_failed,),
        )
    return _unchanged(current, note=f"payment failure ignored for {current.value} subscription")


def on_subscription_updated(
    current: SubscriptionStatus, provider_status: str
) -> Transition:
    """Mirror the provider's status when the edge is allowed."""
    target = map_provider_status(provider_status)
    if target is None:
        return _unchanged(current, note=f"unmapped provider status {provider_status}")
    if target == current:
        return _unchanged(current)
    if not can_transition(current, target):
        return _unchanged(
            current, note=f"refused {current.value} -> {target.value} from provider"
        )
    return Transition(previous=current, status=target)


def on_subscription_deleted(current: SubscriptionStatus) -> Transition:
    if current == S.expired:
        return _unchanged(current)
    return Transition(previous=current, status=S.expired)


def on_expiry_sweep(
    current: SubscriptionStatus,
    cancel_at_period_end: bool,
    period_end: datetime | None,
    now: datetime,
) -> Transition:
    """Expire subscriptions whose paid period has run out."""
    period_end = as_utc(period_end)
    if period_end is None or period_end >= now:
        return _unchanged(current)
    if current in (S.active, S.past_due) and cancel_at_period_end:
        return Transition(
            previous=current,
            status=S.expired,
            effects=(EmailJobType.subscription_canceled,),
        )
    if current == S.canceled:
        return Transition(previous=current, status=S.expired)
    return _unchanged(current)
