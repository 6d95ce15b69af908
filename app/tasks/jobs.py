"""Celery entry points for the job queues."""

import logging
from dataclasses import replace

from app.celery_app import celery_app
from app.db import SessionLocal
from app.models.scheduler import JobStatus, RecurringJob
from app.schemas.jobs import SubscriptionJobPayload
from app.services.common import utcnow
from app.services.email_jobs import email_job_handlers
from app.services.jobs import JobQueue, JobRunner
from app.services.scheduler import recurring_job_lock
from app.services.subscription_jobs import subscription_job_handlers

logger = logging.getLogger(__name__)


def build_runner(queue: JobQueue | None = None) -> JobRunner:
    handlers = {**subscription_job_handlers(), **email_job_handlers()}
    return JobRunner(SessionLocal, handlers, queue or JobQueue())


@celery_app.task(
    bind=True, name="app.tasks.jobs.run_job", max_retries=None, acks_late=True
)
def run_job(self, job_id: str) -> str | None:
    outcome = build_runner().run(job_id)
    if outcome.status == JobStatus.retrying:
        raise self.retry(countdown=outcome.retry_in)
    return outcome.status.value if outcome.status else None


@celery_app.task(name="app.tasks.jobs.run_recurring")
def run_recurring(schedule_id: str) -> str | None:
    extra = {"schedule_id": schedule_id}
    with recurring_job_lock(schedule_id) as acquired:
        if not acquired:
            logger.info("Previous run still in progress, skipping", extra=extra)
            return None
        session = SessionLocal()
        try:
            recurring = (
                session.query(RecurringJob)
                .filter(RecurringJob.schedule_id == schedule_id)
                .first()
            )
            if recurring is None or not recurring.enabled:
                logger.warning("Recurring job not registered or disabled", extra=extra)
                return None
            queue = JobQueue()
            job = queue.enqueue_subscription(
                session,
                SubscriptionJobPayload(type=recurring.job_type),
                schedule_id=schedule_id,
            )
            recurring.last_run_at = utcnow()
            session.commit()
        finally:
            session.close()
        # Run inline while holding the lock; failures retry through run_job.
        outcome = build_runner(queue).run(job.id)
        if outcome.status == JobStatus.retrying:
            queue.publish([replace(job, countdown=outcome.retry_in)])
        return outcome.status.value if outcome.status else None
