"""Billing provider webhook processing.

Each delivery goes through: signature check, typed parse, a read-only
duplicate check, provider lookups (outside any transaction), then a
single transaction whose first write is the ledger claim. Jobs created
by a handler are outbox rows in that same transaction and are handed to
the broker only after it commits.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import WEBHOOK_EVENTS
from app.models.billing import ProcessedEventStatus
from app.models.scheduler import EmailJobType
from app.models.user import User
from app.schemas.billing_events import (
    CheckoutSessionCompleted,
    EventPayloadError,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionObject,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)
from app.schemas.jobs import EmailJobPayload
from app.services.billing import ledger, state_machine
from app.services.billing.errors import (
    BillingProviderError,
    DomainInconsistency,
    InvalidTransition,
)
from app.services.billing.payments import payments
from app.services.billing.plans import plans
from app.services.billing.provider import StripeBillingProvider
from app.services.billing.signature import verify_signature
from app.services.billing.subscriptions import subscriptions
from app.services.jobs import JobQueue, QueuedJob
from app.telemetry import tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    status_code: int
    body: dict[str, Any]


@dataclass
class HandlerResult:
    status: ProcessedEventStatus = ProcessedEventStatus.processed
    note: str | None = None
    jobs: list[QueuedJob] = field(default_factory=list)


def _received(**extra: Any) -> dict[str, Any]:
    return {"received": True, **extra}


class BillingWebhookRouter:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: StripeBillingProvider | None = None,
        job_queue: JobQueue | None = None,
        webhook_secret: str | None = None,
        tolerance: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider or StripeBillingProvider()
        self._queue = job_queue or JobQueue()
        self._secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._tolerance = (
            settings.stripe_webhook_tolerance_seconds if tolerance is None else tolerance
        )
        self._handlers = {
            CheckoutSessionCompleted: self._on_checkout_completed,
            InvoicePaymentSucceeded: self._on_invoice_paid,
            InvoicePaymentFailed: self._on_invoice_failed,
            SubscriptionUpdated: self._on_subscription_updated,
            SubscriptionDeleted: self._on_subscription_deleted,
        }

    def is_configured(self) -> bool:
        return bool(self._secret)

    def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        if not self.is_configured():
            logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            return WebhookResult(503, {"received": False, "error": "not_configured"})

        check = verify_signature(payload, signature, self._secret, self._tolerance)
        if not check.ok:
            WEBHOOK_EVENTS.labels("unknown", "rejected").inc()
            return WebhookResult(400, {"error": check.reason})

        try:
            event = parse_event(check.event)
        except EventPayloadError as exc:
            logger.warning("Malformed webhook event: %s", exc)
            WEBHOOK_EVENTS.labels(str(check.event.get("type")), "rejected").inc()
            return WebhookResult(400, {"error": "malformed_event"})

        extra = {"event_id": event.id, "event_type": event.type}
        if isinstance(event, UnhandledEvent):
            logger.debug("Unhandled webhook event type: %s", event.type, extra=extra)
            WEBHOOK_EVENTS.labels(event.type, "unhandled").inc()
            return WebhookResult(200, _received(handled=False))

        db = self._session_factory()
        with tracer.start_as_current_span("billing.webhook") as span:
            span.set_attribute("billing.event_id", event.id)
            span.set_attribute("billing.event_type", event.type)
            try:
                result = self._process(db, event, check.event, extra)
            finally:
                db.close()
            span.set_attribute("http.response.status_code", result.status_code)
            return result

    def _process(
        self, db: Session, event, raw: dict[str, Any], extra: dict[str, str]
    ) -> WebhookResult:
        try:
            if ledger.is_processed(db, event.id):
                return self._duplicate(event, extra)
            db.rollback()
            snapshot = self._prefetch(event)
        except BillingProviderError as exc:
            logger.error("Provider lookup failed: %s", exc, extra=extra)
            return self._failure(event)
        except Exception:
            logger.exception("Webhook pre-processing failed", extra=extra)
            return self._failure(event)

        try:
            claim = ledger.try_claim(db, event.id, event.type)
            if not claim.claimed:
                return self._duplicate(event, extra)
            result = self._handlers[type(event)](db, event, snapshot)
            ledger.mark(claim.record, result.status, result.note)
            db.commit()
        except (DomainInconsistency, InvalidTransition) as exc:
            db.rollback()
            return self._flag(db, event, raw, exc, extra)
        except IntegrityError as exc:
            db.rollback()
            if ledger.is_ledger_conflict(exc):
                return self._duplicate(event, extra)
            logger.exception("Webhook transaction failed", extra=extra)
            return self._failure(event)
        except Exception:
            db.rollback()
            logger.exception("Webhook transaction failed", extra=extra)
            return self._failure(event)

        self._queue.publish(result.jobs)
        outcome = result.status.value
        logger.info("Webhook event %s: %s", outcome, event.type, extra=extra)
        WEBHOOK_EVENTS.labels(event.type, outcome).inc()
        return WebhookResult(200, _received())

    def _prefetch(self, event) -> SubscriptionObject | None:
        """Fetch the provider's current subscription before the transaction opens."""
        if isinstance(event, CheckoutSessionCompleted) and event.session.subscription:
            return self._provider.retrieve_subscription(event.session.subscription)
        if isinstance(event, InvoicePaymentSucceeded) and event.invoice.subscription:
            return self._provider.retrieve_subscription(event.invoice.subscription)
        return None

    def _duplicate(self, event, extra: dict[str, str]) -> WebhookResult:
        logger.info("Duplicate webhook event ignored", extra=extra)
        WEBHOOK_EVENTS.labels(event.type, "duplicate").inc()
        return WebhookResult(200, _received(status="already_processed"))

    def _failure(self, event) -> WebhookResult:
        WEBHOOK_EVENTS.labels(event.type, "failed").inc()
        return WebhookResult(500, {"received": False, "error": "internal_failure"})

    def _flag(
        self,
        db: Session,
        event,
        raw: dict[str, Any],
        exc: Exception,
        extra: dict[str, str],
    ) -> WebhookResult:
        """Acknowledge an event that cannot be applied and keep it for review."""
        logger.error("Webhook event needs reconciliation: %s", exc, extra=extra)
        try:
            claim = ledger.try_claim(
                db,
                event.id,
                event.type,
                status=ProcessedEventStatus.needs_reconciliation,
                error_message=str(exc),
                payload=raw,
            )
            if not claim.claimed:
                return self._duplicate(event, extra)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to flag webhook event", extra=extra)
            return self._failure(event)
        WEBHOOK_EVENTS.labels(event.type, "flagged").inc()
        return WebhookResult(200, _received(status="flagged"))

    def _missing_subscription(self, provider_subscription_id: str | None) -> HandlerResult:
        logger.warning(
            "No local subscription for %s; not yet synced", provider_subscription_id
        )
        return HandlerResult(
            status=ProcessedEventStatus.ignored,
            note=f"subscription {provider_subscription_id} not found locally",
        )

    def _email(self, db: Session, result: HandlerResult, **fields: Any) -> None:
        result.jobs.append(self._queue.enqueue_email(db, EmailJobPayload(**fields)))

    # ── Handlers ─────────────────────────────────────────

    def _on_checkout_completed(
        self,
        db: Session,
        event: CheckoutSessionCompleted,
        snapshot: SubscriptionObject | None,
    ) -> HandlerResult:
        session = event.session
        if not session.subscription or snapshot is None:
            return HandlerResult(
                status=ProcessedEventStatus.ignored, note="checkout without subscription"
            )
        if subscriptions.get_by_provider_id(db, session.subscription) is not None:
            return HandlerResult(
                status=ProcessedEventStatus.ignored, note="subscription already recorded"
            )

        if not session.user_id:
            raise DomainInconsistency("checkout session has no userId metadata")
        try:
            user_id = UUID(session.user_id)
        except ValueError as exc:
            raise DomainInconsistency(f"invalid userId {session.user_id!r}") from exc
        if db.get(User, user_id) is None:
            raise DomainInconsistency(f"user {user_id} not found")

        price_id = session.price_id or snapshot.price_id
        plan = plans.get_by_price_id(db, price_id)
        if plan is None:
            raise DomainInconsistency(f"no active plan for price {price_id}")
        live = subscriptions.find_live_for_user(db, user_id)
        if live is not None:
            raise DomainInconsistency(
                f"user {user_id} already has live subscription {live.id}"
            )

        transition = state_machine.on_checkout_completed(snapshot.status)
        subscription = subscriptions.create_from_checkout(
            db, user_id=user_id, plan=plan, snapshot=snapshot, status=transition.status
        )
        result = HandlerResult()
        for effect in transition.effects:
            self._email(
                db, result, type=effect, user_id=user_id, subscription_id=subscription.id
            )
        return result

    def _on_invoice_paid(
        self,
        db: Session,
        event: InvoicePaymentSucceeded,
        snapshot: SubscriptionObject | None,
    ) -> HandlerResult:
        invoice = event.invoice
        if not invoice.subscription:
            return HandlerResult(
                status=ProcessedEventStatus.ignored, note="invoice without subscription"
            )
        subscription = subscriptions.get_by_provider_id(db, invoice.subscription)
        if subscription is None:
            return self._missing_subscription(invoice.subscription)

        payments.record_succeeded(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            invoice=invoice,
        )
        provider_status = None
        if snapshot is not None:
            subscriptions.sync_from_provider(subscription, snapshot)
            provider_status = snapshot.status
        if invoice.proration_credit:
            subscriptions.apply_proration(subscription, invoice.proration_credit)
        transition = state_machine.on_invoice_paid(
            subscription.status,
            provider_status=provider_status,
            trial_invoice=invoice.is_trial_start,
        )
        subscriptions.apply_transition(subscription, transition)
        return HandlerResult()

    def _on_invoice_failed(
        self,
        db: Session,
        event: InvoicePaymentFailed,
        snapshot: SubscriptionObject | None,
    ) -> HandlerResult:
        invoice = event.invoice
        if not invoice.subscription:
            return HandlerResult(
                status=ProcessedEventStatus.ignored, note="invoice without subscription"
            )
        subscription = subscriptions.get_by_provider_id(db, invoice.subscription)
        if subscription is None:
            return self._missing_subscription(invoice.subscription)

        payment = payments.record_failed(
            db,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            invoice=invoice,
        )
        transition = state_machine.on_invoice_failed(subscription.status)
        subscriptions.apply_transition(subscription, transition)
        result = HandlerResult()
        if EmailJobType.payment_failed in transition.effects:
            self._email(
                db,
                result,
                type=EmailJobType.payment_failed,
                user_id=subscription.user_id,
                subscription_id=subscription.id,
                payment_id=payment.id,
                amount=invoice.amount_due,
                currency=invoice.currency,
                dedupe_key=f"{payment.id}:{invoice.attempt_count}",
            )
        return result

    def _on_subscription_updated(
        self,
        db: Session,
        event: SubscriptionUpdated,
        snapshot: SubscriptionObject | None,
    ) -> HandlerResult:
        data = event.subscription
        subscription = subscriptions.get_by_provider_id(db, data.id)
        if subscription is None:
            return self._missing_subscription(data.id)
        subscriptions.sync_from_provider(subscription, data)
        transition = state_machine.on_subscription_updated(subscription.status, data.status)
        subscriptions.apply_transition(subscription, transition)
        return HandlerResult(note=transition.note)

    def _on_subscription_deleted(
        self,
        db: Session,
        event: SubscriptionDeleted,
        snapshot: SubscriptionObject | None,
    ) -> HandlerResult:
        data = event.subscription
        subscription = subscriptions.get_by_provider_id(db, data.id)
        if subscription is None:
            return self._missing_subscription(data.id)
        subscriptions.sync_from_provider(subscription, data)
        transition = state_machine.on_subscription_deleted(subscription.status)
        subscriptions.apply_transition(subscription, transition)
        return HandlerResult()
