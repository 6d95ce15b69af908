"""Gunicorn settings for the webhook API.

Usage:
    gunicorn -c gunicorn.conf.py app.main:app

Celery workers and beat run as separate processes; this file only covers
the HTTP side that receives billing provider deliveries.
"""
from __future__ import annotations

import multiprocessing
import os


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")

# Webhook handlers are I/O bound (Stripe lookups, Postgres), so scale past cores.
workers = _env_int("GUNICORN_WORKERS", multiprocessing.cpu_count() * 2 + 1)
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# Stripe abandons a delivery after about 20s, so a request should not outlive it.
timeout = _env_int("GUNICORN_TIMEOUT", 30)
graceful_timeout = _env_int("GUNICORN_GRACEFUL_TIMEOUT", 30)
keepalive = _env_int("GUNICORN_KEEPALIVE", 5)

max_requests = _env_int("GUNICORN_MAX_REQUESTS", 1000)
max_requests_jitter = _env_int("GUNICORN_MAX_REQUESTS_JITTER", 50)

# Off by default: preloading would share one SQLAlchemy pool across forks.
preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"

# Request logging comes from the app's JSON logs; gunicorn keeps errors only.
accesslog = os.getenv("GUNICORN_ACCESSLOG") or None
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")

proc_name = "subsflow"
