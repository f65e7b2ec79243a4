"""
APScheduler-based CronService for the catch-up sweep.

Runs ``RecoveryProcessor.scan`` once at startup and then every
``sweep_minutes``. The scan is idempotent (unique (job, occurrence_time)
records and guarded advances), so overlapping or repeated runs never
duplicate a transaction.
"""

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..recovery import RecoveryProcessor

logger = logging.getLogger(__name__)


class CronService:
    """Background scheduler for the recovery sweep."""

    def __init__(self, recovery: RecoveryProcessor, sweep_minutes: int) -> None:
        self._recovery = recovery
        self._sweep_minutes = max(1, int(sweep_minutes))
        self._scheduler: BackgroundScheduler | None = None
        self._sweep_job_id = "catchup_sweep"
        self._startup_job_id = "catchup_startup"

    def start(self) -> None:
        if self._scheduler is not None:
            logger.info("CronService already started; ignoring duplicate start.")
            return

        scheduler = BackgroundScheduler(timezone=timezone.utc)

        # Immediate run on startup
        scheduler.add_job(
            self._run_catchup,
            id=self._startup_job_id,
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=3600,
        )

        scheduler.add_job(
            self._run_catchup,
            id=self._sweep_job_id,
            trigger=IntervalTrigger(minutes=self._sweep_minutes),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=3600,
        )

        scheduler.start()
        self._scheduler = scheduler
        logger.info("CronService started: startup catch-up and %s-minute sweep scheduled.", self._sweep_minutes)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.shutdown(wait=False)
            logger.info("CronService stopped.")
        finally:
            self._scheduler = None

    def _run_catchup(self) -> None:
        try:
            summary = self._recovery.scan()
            logger.info("catch-up sweep executed: %s", summary.to_dict())
        except Exception:
            logger.exception("catch-up sweep failed")
