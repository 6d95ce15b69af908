import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.billing import Payment, PaymentStatus
from app.schemas.billing_events import InvoiceObject

logger = logging.getLogger(__name__)


class Payments:
    """One row per provider payment intent."""

    @staticmethod
    def get_by_intent(db: Session, intent_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.provider_payment_intent_id == intent_id)
        return db.scalars(stmt).first()

    @staticmethod
    def record_succeeded(
        db: Session,
        *,
        user_id: UUID,
        subscription_id: UUID | None,
        invoice: InvoiceObject,
    ) -> Payment:
        item = Payments.get_by_intent(db, invoice.payment_key)
        if item is not None:
            if item.status in (PaymentStatus.failed, PaymentStatus.pending):
                # A retried charge on the same intent eventually went through.
                logger.info("Payment %s: %s -> succeeded", item.id, item.status.value)
                item.status = PaymentStatus.succeeded
                item.amount = invoice.amount_paid
                item.invoice_url = invoice.hosted_invoice_url or item.invoice_url
                item.failure_code = None
                item.failure_message = None
            return item
        item = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            provider_payment_intent_id=invoice.payment_key,
            provider_invoice_id=invoice.id,
            amount=invoice.amount_paid,
            currency=invoice.currency,
            status=PaymentStatus.succeeded,
            invoice_url=invoice.hosted_invoice_url,
            receipt_url=invoice.invoice_pdf,
        )
        db.add(item)
        db.flush()
        logger.info("Created Payment: %s (succeeded)", item.id)
        return item

    @staticmethod
    def record_failed(
        db: Session,
        *,
        user_id: UUID,
        subscription_id: UUID | None,
        invoice: InvoiceObject,
    ) -> Payment:
        item = Payments.get_by_intent(db, invoice.payment_key)
        if item is not None:
            return item
        item = Payment(
            user_id=user_id,
            subscription_id=subscription_id,
            provider_payment_intent_id=invoice.payment_key,
            provider_invoice_id=invoice.id,
            amount=invoice.amount_due,
            currency=invoice.currency,
            status=PaymentStatus.failed,
            failure_code=invoice.failure_code,
            failure_message=invoice.failure_message,
            invoice_url=invoice.hosted_invoice_url,
        )
        db.add(item)
        db.flush()
        logger.info("Created Payment: %s (failed)", item.id)
        return item


payments = Payments()
