"""Subscription lifecycle sweeps run on the subscription queue.

Every sweep selects only rows still in a pre-transition state, so running
one twice (or concurrently with a late webhook) is harmless: the second
pass finds nothing left to do. Reminder emails are deduplicated per
subscription and period by the notification layer.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from app.config import settings
from app.models.billing import Subscription
from app.models.scheduler import JobQueueName, SubscriptionJobType
from app.schemas.jobs import EmailJobPayload
from app.services.billing import ledger, state_machine
from app.services.billing.subscriptions import subscriptions
from app.services.jobs import JobContext, JobHandler

logger = logging.getLogger(__name__)


def _batch_size(ctx: JobContext) -> int:
    return ctx.record.batch_size or settings.job_batch_size


def _notify(ctx: JobContext, effects, subscription: Subscription) -> None:
    for effect in effects:
        ctx.enqueue_email(
            EmailJobPayload(
                type=effect,
                user_id=subscription.user_id,
                subscription_id=subscription.id,
            )
        )


def check_expiry(ctx: JobContext) -> int:
    """Expire subscriptions whose paid period ended while flagged to cancel."""
    if ctx.record.target_id is not None:
        target = ctx.db.get(Subscription, ctx.record.target_id)
        candidates = [target] if target is not None else []
    else:
        candidates = subscriptions.due_for_expiry(ctx.db, ctx.now, _batch_size(ctx))
    expired = 0
    for subscription in candidates:
        transition = state_machine.on_expiry_sweep(
            subscription.status,
            subscription.cancel_at_period_end,
            subscription.current_period_end,
            ctx.now,
        )
        if not subscriptions.apply_transition(subscription, transition):
            continue
        _notify(ctx, transition.effects, subscription)
        expired += 1
    logger.info("Expiry check: %d subscriptions expired", expired)
    return expired


def send_renewal_reminders(ctx: JobContext) -> int:
    start = ctx.now + timedelta(days=settings.renewal_reminder_days)
    due = subscriptions.renewing_between(
        ctx.db, start, start + timedelta(days=1), _batch_size(ctx)
    )
    for subscription in due:
        ctx.enqueue_email(
            EmailJobPayload(
                type="renewal_reminder",
                user_id=subscription.user_id,
                subscription_id=subscription.id,
            )
        )
    logger.info("Renewal reminders: %d queued", len(due))
    return len(due)


def process_trial_ending(ctx: JobContext) -> int:
    start = ctx.now + timedelta(days=settings.trial_ending_days)
    due = subscriptions.trials_ending_between(
        ctx.db, start, start + timedelta(days=1), _batch_size(ctx)
    )
    for subscription in due:
        ctx.enqueue_email(
            EmailJobPayload(
                type="trial_ending",
                user_id=subscription.user_id,
                subscription_id=subscription.id,
            )
        )
    logger.info("Trial ending notices: %d queued", len(due))
    return len(due)


def cleanup_expired(ctx: JobContext) -> int:
    """Report long-expired subscriptions and prune settled ledger rows."""
    cutoff = ctx.now - timedelta(days=settings.expired_archive_after_days)
    stale = subscriptions.expired_before(ctx.db, cutoff, _batch_size(ctx))
    if stale:
        logger.info("Found %d expired subscriptions eligible for archival", len(stale))
    ledger.prune_processed(
        ctx.db, ctx.now - timedelta(days=settings.processed_event_retention_days)
    )
    return len(stale)


def relay_pending_jobs(ctx: JobContext) -> int:
    relayed = ctx.queue.relay_pending(ctx.db, ctx.now)
    ctx.followups.extend(relayed)
    return len(relayed)


def subscription_job_handlers() -> dict[tuple[JobQueueName, str], JobHandler]:
    return {
        (JobQueueName.subscription, SubscriptionJobType.check_expiry.value): check_expiry,
        (
            JobQueueName.subscription,
            SubscriptionJobType.send_renewal_reminders.value,
        ): send_renewal_reminders,
        (
            JobQueueName.subscription,
            SubscriptionJobType.process_trial_ending.value,
        ): process_trial_ending,
        (
            JobQueueName.subscription,
            SubscriptionJobType.cleanup_expired.value,
        ): cleanup_expired,
        (
            JobQueueName.subscription,
            SubscriptionJobType.relay_pending_jobs.value,
        ): relay_pending_jobs,
    }
