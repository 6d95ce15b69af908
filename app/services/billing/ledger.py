"""Idempotency ledger for provider events.

The ledger row is the first write of an event's unit of work. Its unique
``event_id`` constraint is what makes concurrent deliveries of the same
event collapse to a single application: whichever transaction commits
the row wins, the other fails on insert and rolls back everything.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.billing import ProcessedEvent, ProcessedEventStatus
from app.services.common import utcnow

logger = logging.getLogger(__name__)

_LEDGER_CONSTRAINT = "uq_processed_events_event_id"


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    record: ProcessedEvent | None = None


def is_processed(db: Session, event_id: str) -> bool:
    """Fast read-only check used before opening the event transaction."""
    stmt = select(ProcessedEvent.id).where(ProcessedEvent.event_id == event_id)
    return db.scalar(stmt.limit(1)) is not None


def try_claim(
    db: Session,
    event_id: str,
    event_type: str,
    *,
    status: ProcessedEventStatus = ProcessedEventStatus.processed,
    error_message: str | None = None,
    payload: dict | None = None,
) -> ClaimResult:
    """Insert the ledger row for ``event_id`` inside the caller's transaction.

    Must be called before any other write in the session. On a duplicate
    the session is rolled back and ``claimed`` is False.
    """
    record = ProcessedEvent(
        event_id=event_id,
        event_type=event_type,
        status=status,
        error_message=error_message,
        payload=payload,
        processed_at=utcnow(),
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        if not is_ledger_conflict(exc):
            raise
        logger.info(
            "Event already claimed: %s",
            event_id,
            extra={"event_id": event_id, "event_type": event_type},
        )
        return ClaimResult(claimed=False)
    return ClaimResult(claimed=True, record=record)


def is_ledger_conflict(exc: BaseException) -> bool:
    """Return True when ``exc`` is a unique violation on the ledger event id."""
    if not isinstance(exc, IntegrityError):
        return False
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return _LEDGER_CONSTRAINT in message or "processed_events.event_id" in message


def mark(record: ProcessedEvent, status: ProcessedEventStatus, note: str | None = None) -> None:
    record.status = status
    if note:
        record.error_message = note


def prune_processed(db: Session, older_than: datetime) -> int:
    """Delete settled ledger rows older than ``older_than``.

    Rows flagged for reconciliation are kept until an operator clears them.
    """
    stmt = delete(ProcessedEvent).where(
        ProcessedEvent.processed_at < older_than,
        ProcessedEvent.status.in_(
            [ProcessedEventStatus.processed, ProcessedEventStatus.ignored]
        ),
    )
    result = db.execute(stmt)
    count = result.rowcount or 0  # type: ignore[union-attr]
    if count:
        logger.info("Pruned %d processed events older than %s", count, older_than)
    return count
