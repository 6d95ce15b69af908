from __future__ import annotations

from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select

from app.models.billing import ProcessedEvent, ProcessedEventStatus
from app.services.billing import ledger


def _count(db) -> int:
    return db.scalar(select(func.count()).select_from(ProcessedEvent))


def test_claim_then_is_processed(db_session) -> None:
    assert ledger.is_processed(db_session, "evt_1") is False
    claim = ledger.try_claim(db_session, "evt_1", "invoice.paid")
    assert claim.claimed is True
    assert claim.record.status == ProcessedEventStatus.processed
    db_session.commit()
    assert ledger.is_processed(db_session, "evt_1") is True


def test_second_claim_is_refused(db_session) -> None:
    ledger.try_claim(db_session, "evt_2", "invoice.paid")
    db_session.commit()

    claim = ledger.try_claim(db_session, "evt_2", "invoice.paid")

    assert claim.claimed is False
    assert claim.record is None
    assert _count(db_session) == 1


def test_refused_claim_rolls_back_the_unit_of_work(db_session, user) -> None:
    ledger.try_claim(db_session, "evt_3", "invoice.paid")
    db_session.commit()

    user.name = "Changed in the losing transaction"
    claim = ledger.try_claim(db_session, "evt_3", "invoice.paid")

    assert claim.claimed is False
    db_session.refresh(user)
    assert user.name == "Test User"


def test_claim_with_reconciliation_payload(db_session) -> None:
    payload = {"id": "evt_4", "type": "checkout.session.completed"}
    claim = ledger.try_claim(
        db_session,
        "evt_4",
        "checkout.session.completed",
        status=ProcessedEventStatus.needs_reconciliation,
        error_message="user missing",
        payload=payload,
    )
    db_session.commit()
    db_session.refresh(claim.record)
    assert claim.record.payload == payload
    assert claim.record.error_message == "user missing"


def test_mark_sets_status_and_note(db_session) -> None:
    claim = ledger.try_claim(db_session, "evt_5", "invoice.paid")
    ledger.mark(claim.record, ProcessedEventStatus.ignored, "not synced yet")
    db_session.commit()
    db_session.refresh(claim.record)
    assert claim.record.status == ProcessedEventStatus.ignored
    assert claim.record.error_message == "not synced yet"


def test_is_ledger_conflict_rejects_other_errors() -> None:
    assert ledger.is_ledger_conflict(ValueError("nope")) is False


def test_prune_keeps_recent_and_flagged(db_session) -> None:
    now = datetime.now(UTC)
    old = now - timedelta(days=8)
    db_session.add_all(
        [
            ProcessedEvent(event_id="old_ok", event_type="t", processed_at=old),
            ProcessedEvent(
                event_id="old_ignored",
                event_type="t",
                status=ProcessedEventStatus.ignored,
                processed_at=old,
            ),
            ProcessedEvent(
                event_id="old_flagged",
                event_type="t",
                status=ProcessedEventStatus.needs_reconciliation,
                processed_at=old,
            ),
            ProcessedEvent(event_id="recent", event_type="t", processed_at=now),
        ]
    )
    db_session.commit()

    removed = ledger.prune_processed(db_session, now - timedelta(days=7))
    db_session.commit()

    assert removed == 2
    remaining = set(db_session.scalars(select(ProcessedEvent.event_id)).all())
    assert remaining == {"old_flagged", "recent"}
