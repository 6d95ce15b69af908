"""001 – billing core: users, plans, subscriptions, payments, ledger, jobs

Revision ID: 001_billing_core
Revises:
Create Date: 2026-10-17
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_billing_core"
down_revision = None
branch_labels = None
depends_on = None

_ENUMS = {
    "planinterval": ("month", "year"),
    "subscriptionstatus": (
        "trialing", "active", "past_due", "unpaid", "canceled", "expired",
    ),
    "cancelreason": ("too_expensive", "not_using", "missing_features", "other"),
    "paymentstatus": ("pending", "succeeded", "failed", "refunded", "disputed"),
    "processedeventstatus": ("processed", "ignored", "needs_reconciliation"),
    "notificationtype": (
        "welcome", "email_verification", "subscription_created",
        "payment_succeeded", "payment_failed", "renewal_reminder",
        "trial_ending", "subscription_canceled", "password_reset",
    ),
    "notificationchannel": ("email", "in_app"),
    "notificationstatus": ("pending", "sent", "delivered", "failed"),
    "relatedentitytype": ("subscription", "payment", "content"),
    "jobqueuename": ("email", "subscription"),
    "jobstatus": ("queued", "running", "retrying", "completed", "failed"),
    "subscriptionjobtype": (
        "check_expiry", "send_renewal_reminders", "process_trial_ending",
        "cleanup_expired", "relay_pending_jobs",
    ),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    for name in _ENUMS:
        _enum(name).create(conn, checkfirst=True)

    op.create_table(
        "users",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(160)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        *_timestamps(),
    )

    op.create_table(
        "plans",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("slug", sa.String(120), nullable=False, unique=True),
        sa.Column("description", sa.Text()),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("interval", _enum("planinterval"), server_default="month"),
        sa.Column("interval_count", sa.Integer(), server_default="1"),
        sa.Column("trial_days", sa.Integer(), server_default="0"),
        sa.Column("tier_level", sa.Integer(), server_default="1"),
        sa.Column("stripe_price_id", sa.String(255), nullable=False, unique=True),
        sa.Column("stripe_product_id", sa.String(255)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        *_timestamps(),
        sa.CheckConstraint("price >= 0", name="ck_plans_price_non_negative"),
        sa.CheckConstraint(
            "tier_level >= 1 AND tier_level <= 10", name="ck_plans_tier_level_range"
        ),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan_id", _uuid(), sa.ForeignKey("plans.id"), nullable=False),
        sa.Column("provider_subscription_id", sa.String(255), nullable=False),
        sa.Column("provider_customer_id", sa.String(255)),
        sa.Column("status", _enum("subscriptionstatus"), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("trial_start", sa.DateTime(timezone=True)),
        sa.Column("trial_end", sa.DateTime(timezone=True)),
        sa.Column("cancel_at_period_end", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("cancel_reason", _enum("cancelreason")),
        sa.Column("cancel_feedback", sa.Text()),
        sa.Column("payment_method", sa.JSON()),
        sa.Column("proration_credit", sa.Integer(), server_default="0"),
        sa.Column("proration_applied_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", sa.JSON()),
        *_timestamps(),
        sa.UniqueConstraint(
            "provider_subscription_id",
            name="uq_subscriptions_provider_subscription_id",
        ),
        sa.CheckConstraint(
            "proration_credit >= 0", name="ck_subscriptions_proration_non_negative"
        ),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index(
        "ix_subscriptions_status_period_end",
        "subscriptions",
        ["status", "current_period_end"],
    )
    op.create_index(
        "uq_subscriptions_one_live_per_user",
        "subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('trialing', 'active', 'past_due')"),
    )

    op.create_table(
        "payments",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("subscription_id", _uuid(), sa.ForeignKey("subscriptions.id")),
        sa.Column("provider_payment_intent_id", sa.String(255), nullable=False),
        sa.Column("provider_invoice_id", sa.String(255)),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", _enum("paymentstatus"), server_default="pending"),
        sa.Column("failure_code", sa.String(120)),
        sa.Column("failure_message", sa.Text()),
        sa.Column("refunded_amount", sa.Integer(), server_default="0"),
        sa.Column("refund_reason", sa.String(255)),
        sa.Column("dispute_id", sa.String(255)),
        sa.Column("invoice_url", sa.String(1024)),
        sa.Column("receipt_url", sa.String(1024)),
        *_timestamps(),
        sa.UniqueConstraint(
            "provider_payment_intent_id",
            name="uq_payments_provider_payment_intent_id",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        sa.CheckConstraint(
            "refunded_amount >= 0", name="ck_payments_refunded_amount_non_negative"
        ),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])

    op.create_table(
        "processed_events",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("status", _enum("processedeventstatus"), server_default="processed"),
        sa.Column("error_message", sa.Text()),
        sa.Column("payload", sa.JSON()),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("event_id", name="uq_processed_events_event_id"),
    )
    op.create_index(
        "ix_processed_events_processed_at", "processed_events", ["processed_at"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("user_id", _uuid(), nullable=False),
        sa.Column("type", _enum("notificationtype"), nullable=False),
        sa.Column("channel", _enum("notificationchannel"), server_default="email"),
        sa.Column("status", _enum("notificationstatus"), server_default="pending"),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("dedupe_key", sa.String(255)),
        sa.Column("provider_message_id", sa.String(255)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("failure_reason", sa.Text()),
        sa.Column("retry_count", sa.Integer(), server_default="0"),
        sa.Column("related_entity_type", _enum("relatedentitytype")),
        sa.Column("related_entity_id", _uuid()),
        sa.Column("is_read", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "type",
            "channel",
            "dedupe_key",
            name="uq_notifications_user_type_channel_dedupe",
        ),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )

    op.create_table(
        "job_records",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("queue", _enum("jobqueuename"), nullable=False),
        sa.Column("job_type", sa.String(80), nullable=False),
        sa.Column("target_id", _uuid()),
        sa.Column("batch_size", sa.Integer()),
        sa.Column("payload", sa.JSON()),
        sa.Column("schedule_id", sa.String(120)),
        sa.Column("status", _enum("jobstatus"), server_default="queued"),
        sa.Column("attempts", sa.Integer(), server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("backoff_base", sa.Integer(), nullable=False),
        sa.Column("backoff_cap", sa.Integer(), nullable=False),
        sa.Column("next_run_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_error", sa.Text()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_job_records_status_next_run", "job_records", ["status", "next_run_at"]
    )
    op.create_index(
        "ix_job_records_queue_status_finished",
        "job_records",
        ["queue", "status", "finished_at"],
    )

    op.create_table(
        "recurring_jobs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("schedule_id", sa.String(120), nullable=False, unique=True),
        sa.Column("job_type", _enum("subscriptionjobtype"), nullable=False),
        sa.Column("cron", sa.String(120), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("last_run_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )


def downgrade() -> None:
    for table in (
        "recurring_jobs",
        "job_records",
        "notifications",
        "processed_events",
        "payments",
        "subscriptions",
        "plans",
        "users",
    ):
        op.drop_table(table)
    conn = op.get_bind()
    for name in reversed(list(_ENUMS)):
        _enum(name).drop(conn, checkfirst=True)
