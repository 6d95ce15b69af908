import json
import logging
import logging.config
import os
from datetime import datetime, timezone

# Correlation fields passed through ``extra=`` by the webhook router and job runner.
_EXTRA_FIELDS = (
    "request_id",
    "path",
    "method",
    "status",
    "duration_ms",
    "event_id",
    "event_type",
    "job_id",
    "job_type",
    "schedule_id",
)

# Libraries that log every HTTP call or broker heartbeat at INFO.
_NOISY_LOGGERS = ("stripe", "urllib3", "kombu", "celery.beat")


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class KeyValueFormatter(logging.Formatter):
    """Readable single-line output for local development."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{key}={getattr(record, key)}"
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        ]
        return f"{line} [{' '.join(pairs)}]" if pairs else line


def configure_logging() -> None:
    """Install the process-wide logging setup.

    LOG_FORMAT selects ``json`` (default) or ``text``; LOG_LEVEL sets the
    root level.
    """
    fmt = "text" if os.getenv("LOG_FORMAT", "json").lower() == "text" else "json"
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": JsonLogFormatter},
                "text": {"()": KeyValueFormatter},
            },
            "handlers": {
                "default": {"class": "logging.StreamHandler", "formatter": fmt}
            },
            "root": {"handlers": ["default"], "level": level},
            "loggers": {
                name: {"level": "WARNING"} for name in _NOISY_LOGGERS
            },
        }
    )
