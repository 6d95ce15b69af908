"""Background job queue, outbox and runner.

Jobs are ``JobRecord`` rows. Producers add the row inside their own
transaction and hand it to the broker only after that transaction
commits, so a rolled-back unit of work never leaves a job behind and a
committed one never loses its job (``relay_pending`` re-publishes rows the
broker never saw). Workers claim a row with a conditional UPDATE, so a
duplicate delivery of the same job id runs it at most once at a time.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from app.config import QueueSettings, settings
from app.metrics import JOB_RUNS
from app.models.scheduler import JobQueueName, JobRecord, JobStatus
from app.schemas.jobs import EmailJobPayload, SubscriptionJobPayload
from app.services.billing.errors import PermanentJobError
from app.services.common import require_uuid, utcnow
from app.telemetry import tracer

logger = logging.getLogger(__name__)

RUN_JOB_TASK = "app.tasks.jobs.run_job"

Publisher = Callable[[str, str, int | None], None]


def backoff_delay(attempt: int, base: int, cap: int) -> int:
    """Seconds to wait before retry number ``attempt`` (1-based)."""
    return min(base * 2 ** (max(attempt, 1) - 1), cap)


def queue_settings(queue: JobQueueName) -> QueueSettings:
    if queue == JobQueueName.email:
        return settings.email_queue
    return settings.subscription_queue


def celery_publisher(job_id: str, queue: str, countdown: int | None) -> None:
    from app.celery_app import celery_app

    celery_app.send_task(
        RUN_JOB_TASK, args=[job_id], queue=queue, countdown=countdown
    )


@dataclass(frozen=True)
class QueuedJob:
    """Enough of a committed JobRecord to hand it to the broker."""

    id: UUID
    queue: JobQueueName
    job_type: str
    countdown: int | None = None


class JobQueue:
    def __init__(self, publisher: Publisher | None = None) -> None:
        self._publisher = publisher or celery_publisher

    def enqueue_email(
        self, db: Session, payload: EmailJobPayload, *, run_at: datetime | None = None
    ) -> QueuedJob:
        return self._enqueue(
            db,
            JobQueueName.email,
            payload.type.value,
            payload=payload.model_dump(mode="json", exclude_none=True),
            target_id=payload.subscription_id or payload.user_id,
            run_at=run_at,
        )

    def enqueue_subscription(
        self,
        db: Session,
        payload: SubscriptionJobPayload,
        *,
        schedule_id: str | None = None,
    ) -> QueuedJob:
        return self._enqueue(
            db,
            JobQueueName.subscription,
            payload.type.value,
            payload=payload.model_dump(mode="json", exclude_none=True),
            target_id=payload.target_id,
            batch_size=payload.batch_size,
            schedule_id=schedule_id,
        )

    def _enqueue(
        self,
        db: Session,
        queue: JobQueueName,
        job_type: str,
        *,
        payload: dict,
        target_id: UUID | None = None,
        batch_size: int | None = None,
        schedule_id: str | None = None,
        run_at: datetime | None = None,
    ) -> QueuedJob:
        policy = queue_settings(queue)
        now = utcnow()
        record = JobRecord(
            queue=queue,
            job_type=job_type,
            payload=payload,
            target_id=target_id,
            batch_size=batch_size,
            schedule_id=schedule_id,
            status=JobStatus.queued,
            attempts=0,
            max_attempts=policy.max_attempts,
            backoff_base=policy.backoff_base_seconds,
            backoff_cap=policy.backoff_cap_seconds,
            next_run_at=run_at or now,
        )
        db.add(record)
        db.flush()
        countdown = None
        if run_at is not None and run_at > now:
            countdown = int((run_at - now).total_seconds())
        logger.info(
            "Queued %s job %s",
            queue.value,
            job_type,
            extra={"job_id": str(record.id), "job_type": job_type},
        )
        return QueuedJob(record.id, queue, job_type, countdown)

    def publish(self, jobs: Iterable[QueuedJob]) -> int:
        """Hand committed jobs to the broker. Never raises."""
        published = 0
        for job in jobs:
            try:
                self._publisher(str(job.id), job.queue.value, job.countdown)
            except Exception:
                # The row stays queued; relay_pending will pick it up.
                logger.exception(
                    "Failed to publish job %s",
                    job.id,
                    extra={"job_id": str(job.id), "job_type": job.job_type},
                )
                continue
            published += 1
        return published

    def relay_pending(
        self, db: Session, now: datetime | None = None, limit: int = 500
    ) -> list[QueuedJob]:
        """Find jobs the broker lost and mark them for re-publishing.

        The caller commits and then passes the result to :meth:`publish`.
        """
        now = now or utcnow()
        overdue_before = now - timedelta(seconds=settings.job_relay_after_seconds)
        stale_before = now - timedelta(seconds=settings.job_stale_after_seconds)
        stmt = (
            select(JobRecord)
            .where(
                or_(
                    JobRecord.status.in_([JobStatus.queued, JobStatus.retrying])
                    & (JobRecord.next_run_at < overdue_before),
                    (JobRecord.status == JobStatus.running)
                    & (JobRecord.started_at < stale_before),
                )
            )
            .order_by(JobRecord.next_run_at.asc())
            .limit(limit)
        )
        relayed: list[QueuedJob] = []
        for record in db.scalars(stmt).all():
            if record.status == JobStatus.running and record.attempts >= record.max_attempts:
                record.status = JobStatus.failed
                record.finished_at = now
                record.last_error = record.last_error or "Worker lost during final attempt"
                logger.error(
                    "Job %s abandoned after %d attempts",
                    record.id,
                    record.attempts,
                    extra={"job_id": str(record.id), "job_type": record.job_type},
                )
                continue
            record.next_run_at = now
            relayed.append(QueuedJob(record.id, record.queue, record.job_type))
        if relayed:
            logger.warning("Relaying %d pending jobs", len(relayed))
        return relayed


@dataclass
class JobContext:
    db: Session
    record: JobRecord
    queue: JobQueue
    now: datetime
    followups: list[QueuedJob] = field(default_factory=list)

    def enqueue_email(self, payload: EmailJobPayload) -> None:
        self.followups.append(self.queue.enqueue_email(self.db, payload))


JobHandler = Callable[[JobContext], None]


@dataclass(frozen=True)
class JobOutcome:
    job_id: str
    status: JobStatus | None
    retry_in: int | None = None
    error: str | None = None

    @property
    def claimed(self) -> bool:
        return self.status is not None


class JobRunner:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        handlers: dict[tuple[JobQueueName, str], JobHandler],
        queue: JobQueue | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._handlers = handlers
        self._queue = queue or JobQueue()

    def run(self, job_id: str | UUID, now: datetime | None = None) -> JobOutcome:
        job_id = require_uuid(job_id)
        now = now or utcnow()
        db = self._session_factory()
        try:
            if not self._claim(db, job_id, now):
                logger.info(
                    "Job %s not claimable, skipping", job_id, extra={"job_id": str(job_id)}
                )
                return JobOutcome(str(job_id), None)
            record = db.get(JobRecord, job_id)
            extra = {"job_id": str(job_id), "job_type": record.job_type}
            context = JobContext(db=db, record=record, queue=self._queue, now=now)
            try:
                handler = self._handlers.get((record.queue, record.job_type))
                if handler is None:
                    raise PermanentJobError(
                        f"No handler for {record.queue.value}/{record.job_type}"
                    )
                with tracer.start_as_current_span(f"job.{record.job_type}") as span:
                    span.set_attribute("job.id", str(job_id))
                    span.set_attribute("job.queue", record.queue.value)
                    span.set_attribute("job.attempt", record.attempts)
                    handler(context)
                record.status = JobStatus.completed
                record.finished_at = now
                record.last_error = None
                db.commit()
            except Exception as exc:
                db.rollback()
                return self._record_failure(db, job_id, exc, now)
            logger.info("Job completed", extra=extra)
            JOB_RUNS.labels(record.queue.value, record.job_type, "completed").inc()
            self._queue.publish(context.followups)
            self._prune(db, record.queue)
            return JobOutcome(str(job_id), JobStatus.completed)
        finally:
            db.close()

    def _claim(self, db: Session, job_id: UUID, now: datetime) -> bool:
        stale_before = now - timedelta(seconds=settings.job_stale_after_seconds)
        stmt = (
            update(JobRecord)
            .where(
                JobRecord.id == job_id,
                JobRecord.attempts < JobRecord.max_attempts,
                or_(
                    JobRecord.status.in_([JobStatus.queued, JobStatus.retrying])
                    & (JobRecord.next_run_at <= now),
                    (JobRecord.status == JobStatus.running)
                    & (JobRecord.started_at < stale_before),
                ),
            )
            .values(
                status=JobStatus.running,
                attempts=JobRecord.attempts + 1,
                started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        db.commit()
        return result.rowcount == 1  # type: ignore[union-attr]

    def _record_failure(
        self, db: Session, job_id: UUID, exc: Exception, now: datetime
    ) -> JobOutcome:
        record = db.get(JobRecord, job_id)
        db.refresh(record)
        error = f"{type(exc).__name__}: {exc}"[:2000]
        record.last_error = error
        extra = {"job_id": str(job_id), "job_type": record.job_type}
        if isinstance(exc, PermanentJobError) or record.attempts >= record.max_attempts:
            record.status = JobStatus.failed
            record.finished_at = now
            db.commit()
            logger.error(
                "Job failed after %d attempts: %s", record.attempts, error, extra=extra
            )
            JOB_RUNS.labels(record.queue.value, record.job_type, "failed").inc()
            self._prune(db, record.queue)
            return JobOutcome(str(job_id), JobStatus.failed, error=error)
        delay = backoff_delay(record.attempts, record.backoff_base, record.backoff_cap)
        record.status = JobStatus.retrying
        record.next_run_at = now + timedelta(seconds=delay)
        db.commit()
        logger.warning(
            "Job attempt %d failed, retrying in %ss: %s",
            record.attempts,
            delay,
            error,
            extra=extra,
        )
        JOB_RUNS.labels(record.queue.value, record.job_type, "retrying").inc()
        return JobOutcome(str(job_id), JobStatus.retrying, retry_in=delay, error=error)

    def _prune(self, db: Session, queue: JobQueueName) -> int:
        """Keep only the newest finished records per queue and outcome."""
        policy = queue_settings(queue)
        removed = 0
        for status, keep in (
            (JobStatus.completed, policy.retention_on_success),
            (JobStatus.failed, policy.retention_on_failure),
        ):
            newest = (
                select(JobRecord.id)
                .where(JobRecord.queue == queue, JobRecord.status == status)
                .order_by(JobRecord.finished_at.desc())
                .limit(keep)
            )
            stmt = (
                delete(JobRecord)
                .where(
                    JobRecord.queue == queue,
                    JobRecord.status == status,
                    JobRecord.id.not_in(newest),
                )
                .execution_options(synchronize_session=False)
            )
            removed += db.execute(stmt).rowcount or 0  # type: ignore[union-attr]
        db.commit()
        return removed
