from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


def _engine_options(url: str) -> dict:
    if make_url(url).get_backend_name() == "sqlite":
        # Local runs only; the live-subscription partial index still applies.
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
    }


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Engine shared by the API, workers, beat and telemetry instrumentation."""
    return create_engine(settings.database_url, **_engine_options(settings.database_url))


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)
