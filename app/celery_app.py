from celery import Celery
from celery.signals import worker_process_init
from kombu import Queue

from app.logging import configure_logging
from app.services.scheduler_config import get_celery_config
from app.telemetry import setup_worker_otel

configure_logging()

celery_app = Celery("subsflow", include=["app.tasks.jobs"])
celery_app.conf.update(get_celery_config())
celery_app.conf.task_queues = (Queue("email"), Queue("subscription"))
celery_app.conf.beat_scheduler = "app.celery_scheduler.DbScheduler"


@worker_process_init.connect
def _init_worker_tracing(**kwargs) -> None:
    # Exporters hold threads, so each forked worker sets up its own.
    setup_worker_otel()
