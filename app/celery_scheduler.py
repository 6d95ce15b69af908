import logging
import time

from celery.beat import Scheduler

from app.services.scheduler_config import build_beat_schedule

logger = logging.getLogger(__name__)


class DbScheduler(Scheduler):
    """Beat scheduler whose entries come from the recurring_jobs table."""

    def __init__(self, *args, **kwargs):
        self._last_refresh_at = 0.0
        super().__init__(*args, **kwargs)

    def setup_schedule(self):
        self._refresh_schedule(force=True)

    def tick(self, *args, **kwargs):
        self._refresh_schedule()
        return super().tick(*args, **kwargs)

    def _refresh_schedule(self, force: bool = False):
        refresh_seconds = int(self.app.conf.get("beat_refresh_seconds", 30))
        now = time.monotonic()
        if not force and now - self._last_refresh_at < max(refresh_seconds, 1):
            return
        entries = build_beat_schedule()
        if set(entries) != set(self.schedule):
            logger.info("Recurring schedule now: %s", ", ".join(sorted(entries)) or "empty")
        # merge_inplace keeps last_run_at for entries that did not change.
        self.merge_inplace(entries)
        self._last_refresh_at = now
