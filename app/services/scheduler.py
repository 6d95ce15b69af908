"""Recurring job registration and background-job startup."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.scheduler import RecurringJob, SubscriptionJobType
from app.services.scheduler_config import parse_cron

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecurringSchedule:
    schedule_id: str
    job_type: SubscriptionJobType
    cron: str


def recurring_schedules() -> list[RecurringSchedule]:
    """The fixed set of recurring triggers, keyed by stable schedule ids."""
    return [
        RecurringSchedule(
            "check-expiry-hourly",
            SubscriptionJobType.check_expiry,
            settings.cron_check_expiry,
        ),
        RecurringSchedule(
            "renewal-reminders-daily",
            SubscriptionJobType.send_renewal_reminders,
            settings.cron_renewal_reminders,
        ),
        RecurringSchedule(
            "trial-ending-daily",
            SubscriptionJobType.process_trial_ending,
            settings.cron_trial_ending,
        ),
        RecurringSchedule(
            "cleanup-expired-weekly",
            SubscriptionJobType.cleanup_expired,
            settings.cron_cleanup_expired,
        ),
        RecurringSchedule(
            "relay-pending-jobs",
            SubscriptionJobType.relay_pending_jobs,
            settings.cron_relay_pending_jobs,
        ),
    ]


def register_recurring_jobs(db: Session) -> list[RecurringJob]:
    """Upsert every recurring trigger by schedule id.

    Safe to call from every process on every start: an existing row is
    updated in place, and a row inserted concurrently by another process
    is picked up on the second pass.
    """
    registered: list[RecurringJob] = []
    for spec in recurring_schedules():
        parse_cron(spec.cron)
        for _ in range(2):
            job = db.scalars(
                select(RecurringJob).where(RecurringJob.schedule_id == spec.schedule_id)
            ).first()
            if job is None:
                job = RecurringJob(
                    schedule_id=spec.schedule_id,
                    job_type=spec.job_type,
                    cron=spec.cron,
                    enabled=True,
                )
                db.add(job)
            else:
                job.job_type = spec.job_type
                job.cron = spec.cron
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                continue
            registered.append(job)
            break
        else:
            raise RuntimeError(f"Could not register recurring job {spec.schedule_id}")
    logger.info("Registered %d recurring jobs", len(registered))
    return registered


def _check_broker() -> None:
    from app.celery_app import celery_app

    with celery_app.connection_for_write() as conn:
        conn.ensure_connection(max_retries=1)


def initialize_jobs(
    session_factory: Callable[[], Session],
    broker_check: Callable[[], None] | None = None,
) -> bool:
    """Register recurring jobs and verify the broker.

    Returns False, leaving webhook ingestion unaffected, when anything
    fails; the process then runs with background jobs disabled.
    """
    db = session_factory()
    try:
        register_recurring_jobs(db)
        (broker_check or _check_broker)()
    except Exception:
        logger.exception("Background job startup failed; background jobs disabled")
        db.rollback()
        return False
    finally:
        db.close()
    logger.info("Background jobs initialized")
    return True


def _get_redis():
    import redis as redis_lib

    return redis_lib.Redis.from_url(
        settings.redis_url, decode_responses=True, socket_timeout=2
    )


@contextmanager
def recurring_job_lock(schedule_id: str, client=None) -> Iterator[bool]:
    """Non-blocking lock so one schedule never overlaps itself.

    Yields False when another run currently holds the lock.
    """
    client = client or _get_redis()
    lock = client.lock(
        f"recurring-job:{schedule_id}",
        timeout=settings.recurring_lock_timeout_seconds,
        blocking=False,
    )
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            try:
                lock.release()
            except Exception:
                logger.warning(
                    "Recurring job lock expired before release",
                    extra={"schedule_id": schedule_id},
                )
