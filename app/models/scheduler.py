import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class JobQueueName(str, enum.Enum):
    email = "email"
    subscription = "subscription"


class JobStatus(str, enum.Enum):
    queued = "queued"
    running = "running"
    retrying = "retrying"
    completed = "completed"
    failed = "failed"


class SubscriptionJobType(str, enum.Enum):
    check_expiry = "check_expiry"
    send_renewal_reminders = "send_renewal_reminders"
    process_trial_ending = "process_trial_ending"
    cleanup_expired = "cleanup_expired"
    relay_pending_jobs = "relay_pending_jobs"


class EmailJobType(str, enum.Enum):
    welcome = "welcome"
    password_reset = "password_reset"
    subscription_confirmation = "subscription_confirmation"
    payment_failed = "payment_failed"
    renewal_reminder = "renewal_reminder"
    trial_ending = "trial_ending"
    subscription_canceled = "subscription_canceled"


class JobRecord(Base):
    """Durable record of one background job, also the publish outbox."""

    __tablename__ = "job_records"
    __table_args__ = (
        Index("ix_job_records_status_next_run", "status", "next_run_at"),
        Index("ix_job_records_queue_status_finished", "queue", "status", "finished_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    queue: Mapped[JobQueueName] = mapped_column(Enum(JobQueueName), nullable=False)
    job_type: Mapped[str] = mapped_column(String(80), nullable=False)
    target_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    batch_size: Mapped[int | None] = mapped_column(Integer)
    payload: Mapped[dict | None] = mapped_column(JSON)
    schedule_id: Mapped[str | None] = mapped_column(String(120))

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.queued
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_base: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_cap: Mapped[int] = mapped_column(Integer, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    last_error: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class RecurringJob(Base):
    __tablename__ = "recurring_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    schedule_id: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    job_type: Mapped[SubscriptionJobType] = mapped_column(
        Enum(SubscriptionJobType), nullable=False
    )
    cron: Mapped[str] = mapped_column(String(120), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
