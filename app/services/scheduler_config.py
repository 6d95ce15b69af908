import logging

from celery.schedules import crontab

from app.config import settings
from app.db import SessionLocal
from app.models.scheduler import RecurringJob
from app.services.common import env_int, env_value

logger = logging.getLogger(__name__)

RUN_RECURRING_TASK = "app.tasks.jobs.run_recurring"


def get_celery_config() -> dict:
    broker = env_value("CELERY_BROKER_URL") or settings.redis_url
    backend = env_value("CELERY_RESULT_BACKEND") or settings.redis_url
    config = {
        "broker_url": broker,
        "result_backend": backend,
        "timezone": env_value("CELERY_TIMEZONE") or "UTC",
        "enable_utc": True,
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,
        "task_default_queue": "subscription",
        "broker_connection_retry_on_startup": True,
    }
    config["beat_max_loop_interval"] = env_int("CELERY_BEAT_MAX_LOOP_INTERVAL", 5)
    config["beat_refresh_seconds"] = env_int("CELERY_BEAT_REFRESH_SECONDS", 30)
    return config


def parse_cron(expression: str) -> crontab:
    """Build a celery crontab from a five-field cron expression."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 cron fields, got {len(fields)}: {expression!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


def build_beat_schedule() -> dict:
    schedule: dict[str, dict] = {}
    session = SessionLocal()
    try:
        jobs = (
            session.query(RecurringJob)
            .filter(RecurringJob.enabled.is_(True))
            .all()
        )
        for job in jobs:
            try:
                cron = parse_cron(job.cron)
            except ValueError:
                logger.error(
                    "Skipping recurring job with bad cron %r",
                    job.cron,
                    extra={"schedule_id": job.schedule_id},
                )
                continue
            schedule[job.schedule_id] = {
                "task": RUN_RECURRING_TASK,
                "schedule": cron,
                "args": [job.schedule_id],
                "options": {"queue": "subscription"},
            }
    except Exception:
        logger.exception("Failed to build Celery beat schedule.")
    finally:
        session.close()
    return schedule
