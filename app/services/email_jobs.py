"""Email queue handlers."""
from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models.billing import Subscription
from app.models.notification import NotificationType, RelatedEntityType
from app.models.scheduler import EmailJobType, JobQueueName
from app.schemas.jobs import EmailJobPayload
from app.services.billing.errors import NotificationDeliveryError, PermanentJobError
from app.services.common import as_utc
from app.services.jobs import JobContext, JobHandler
from app.services.notification import NotificationService, Transport

logger = logging.getLogger(__name__)

NOTIFICATION_KINDS: dict[EmailJobType, NotificationType] = {
    EmailJobType.welcome: NotificationType.welcome,
    EmailJobType.password_reset: NotificationType.password_reset,
    EmailJobType.subscription_confirmation: NotificationType.subscription_created,
    EmailJobType.payment_failed: NotificationType.payment_failed,
    EmailJobType.renewal_reminder: NotificationType.renewal_reminder,
    EmailJobType.trial_ending: NotificationType.trial_ending,
    EmailJobType.subscription_canceled: NotificationType.subscription_canceled,
}


def _date_key(value) -> str:
    value = as_utc(value)
    return value.date().isoformat() if value else "none"


def _display_date(value) -> str:
    value = as_utc(value)
    return value.strftime("%B %d, %Y") if value else ""


class EmailJobs:
    def __init__(self, transport: Transport | None = None) -> None:
        self._transport = transport

    def handle(self, ctx: JobContext) -> None:
        try:
            payload = EmailJobPayload.model_validate(ctx.record.payload or {})
        except ValidationError as exc:
            raise PermanentJobError(f"Invalid email job payload: {exc}") from exc

        context, dedupe_key, related = self._build_context(ctx.db, payload)
        service = NotificationService(ctx.db, self._transport)
        result = service.send(
            NOTIFICATION_KINDS[payload.type],
            payload.user_id,
            context,
            dedupe_key=dedupe_key,
            related=related,
        )
        if result.success:
            return
        # Keep the failed attempt on record; the job itself is retried.
        ctx.db.commit()
        if not result.retryable:
            raise PermanentJobError(result.error or "Notification not deliverable")
        raise NotificationDeliveryError(result.error or "Email delivery failed")

    def _build_context(
        self, db: Session, payload: EmailJobPayload
    ) -> tuple[dict[str, Any], str | None, tuple[RelatedEntityType, Any] | None]:
        context: dict[str, Any] = {
            "token": payload.token,
            "amount": payload.amount,
            "currency": payload.currency,
        }
        if payload.subscription_id is None:
            return context, payload.dedupe_key, None

        subscription = db.get(Subscription, payload.subscription_id)
        if subscription is None:
            raise PermanentJobError(f"Subscription {payload.subscription_id} not found")
        context["plan_name"] = subscription.plan.name if subscription.plan else None
        sub_key = str(subscription.id)

        if payload.type == EmailJobType.renewal_reminder:
            context["date"] = _display_date(subscription.current_period_end)
            default_key = f"{sub_key}:{_date_key(subscription.current_period_end)}"
        elif payload.type == EmailJobType.trial_ending:
            context["date"] = _display_date(subscription.trial_end)
            default_key = f"{sub_key}:{_date_key(subscription.trial_end)}"
        elif payload.type == EmailJobType.payment_failed:
            default_key = str(payload.payment_id) if payload.payment_id else None
        else:
            default_key = sub_key

        if payload.type == EmailJobType.payment_failed and payload.payment_id:
            related = (RelatedEntityType.payment, payload.payment_id)
        else:
            related = (RelatedEntityType.subscription, subscription.id)
        return context, payload.dedupe_key or default_key, related


def email_job_handlers(
    transport: Transport | None = None,
) -> dict[tuple[JobQueueName, str], JobHandler]:
    jobs = EmailJobs(transport)
    return {(JobQueueName.email, job_type.value): jobs.handle for job_type in EmailJobType}
