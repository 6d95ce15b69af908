"""Notification dispatch: render, send, and record every attempt."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.notification import (
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
    RelatedEntityType,
)
from app.models.user import User
from app.services.common import utcnow
from app.services.email import EmailSendResult, render_email, send_email

logger = logging.getLogger(__name__)

Transport = Callable[[str, str, str, str | None], EmailSendResult]

# Kinds that also leave a message in the user's in-app inbox.
IN_APP_KINDS = frozenset(
    {
        NotificationType.subscription_created,
        NotificationType.payment_failed,
        NotificationType.renewal_reminder,
        NotificationType.trial_ending,
        NotificationType.subscription_canceled,
    }
)


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    retryable: bool = True
    skipped: bool = False


class NotificationService:
    """Sends user notifications and keeps a record of each attempt."""

    def __init__(self, db: Session, transport: Transport | None = None) -> None:
        self.db = db
        self.transport = transport or send_email

    def send(
        self,
        kind: NotificationType,
        user_id: UUID,
        context: dict[str, Any] | None = None,
        *,
        dedupe_key: str | None = None,
        related: tuple[RelatedEntityType, UUID] | None = None,
    ) -> SendResult:
        """Send one email notification.

        A row already marked sent for the same dedupe key short-circuits;
        a previously failed one is reused and its retry count bumped. The
        result reports failure instead of raising.
        """
        context = context or {}
        user = self.db.get(User, user_id)
        rendered = render_email(kind, user.name if user else None, context)
        record = self._find(user_id, kind, NotificationChannel.email, dedupe_key)
        if record is not None and record.status in (
            NotificationStatus.sent,
            NotificationStatus.delivered,
        ):
            logger.info("Notification %s already sent to %s", kind.value, user_id)
            return SendResult(
                success=True,
                provider_message_id=record.provider_message_id,
                skipped=True,
            )
        if record is None:
            record = Notification(
                user_id=user_id,
                type=kind,
                channel=NotificationChannel.email,
                dedupe_key=dedupe_key,
                retry_count=0,
            )
        else:
            record.retry_count = (record.retry_count or 0) + 1
        record.subject = rendered.subject
        record.body = rendered.body_text
        if related is not None:
            record.related_entity_type, record.related_entity_id = related

        if user is None or not user.is_active:
            reason = "Recipient not found or inactive"
            self._finish(record, EmailSendResult(success=False, error=reason))
            logger.warning("Notification %s not sent: %s %s", kind.value, reason, user_id)
            return SendResult(success=False, error=reason, retryable=False)

        try:
            result = self.transport(
                user.email, rendered.subject, rendered.body_html, rendered.body_text
            )
        except Exception as exc:
            logger.exception("Email transport raised for %s", user.email)
            result = EmailSendResult(success=False, error=str(exc))
        self._finish(record, result)

        if kind in IN_APP_KINDS:
            self._record_in_app(
                user_id, kind, rendered.subject, rendered.body_text, dedupe_key, related
            )

        if result.success:
            logger.info("Sent %s notification to %s", kind.value, user_id)
            return SendResult(success=True, provider_message_id=result.message_id)
        return SendResult(success=False, error=result.error)

    def list_for_user(
        self, user_id: UUID, *, channel: NotificationChannel | None = None, limit: int = 50
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == user_id)
        if channel is not None:
            stmt = stmt.where(Notification.channel == channel)
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        return list(self.db.scalars(stmt).all())

    def _find(
        self,
        user_id: UUID,
        kind: NotificationType,
        channel: NotificationChannel,
        dedupe_key: str | None,
    ) -> Notification | None:
        if dedupe_key is None:
            return None
        stmt = select(Notification).where(
            Notification.user_id == user_id,
            Notification.type == kind,
            Notification.channel == channel,
            Notification.dedupe_key == dedupe_key,
        )
        return self.db.scalars(stmt).first()

    def _finish(self, record: Notification, result: EmailSendResult) -> None:
        if result.success:
            record.status = NotificationStatus.sent
            record.sent_at = utcnow()
            record.provider_message_id = result.message_id
            record.failure_reason = None
        else:
            record.status = NotificationStatus.failed
            record.failure_reason = result.error
        self.db.add(record)
        self.db.flush()

    def _record_in_app(
        self,
        user_id: UUID,
        kind: NotificationType,
        subject: str,
        body: str,
        dedupe_key: str | None,
        related: tuple[RelatedEntityType, UUID] | None,
    ) -> None:
        if self._find(user_id, kind, NotificationChannel.in_app, dedupe_key) is not None:
            return
        now = utcnow()
        record = Notification(
            user_id=user_id,
            type=kind,
            channel=NotificationChannel.in_app,
            status=NotificationStatus.delivered,
            subject=subject,
            body=body,
            dedupe_key=dedupe_key,
            sent_at=now,
            delivered_at=now,
        )
        if related is not None:
            record.related_entity_type, record.related_entity_id = related
        self.db.add(record)
        self.db.flush()
