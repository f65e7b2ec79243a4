"""
Owned scheduler runtime: builds the components once and runs their lifecycle.

The FastAPI app keeps a single ``SchedulerRuntime`` on ``app.state`` and
hands it to request handlers through ``Depends`` instead of module globals.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from . import db
from .applier import TransactionApplier
from .config import Settings
from .events import EventSink, build_event_sink
from .intervals import utcnow
from .jobstore import JobStore
from .recovery import RecoveryProcessor
from .scheduler import SchedulerCore
from .services.cron_service import CronService
from .status import StatusReporter

logger = logging.getLogger(__name__)


class SchedulerRuntime:
    def __init__(
        self,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        events: Optional[EventSink] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.events = events or build_event_sink(settings.lesson_engine_url)
        self.store = JobStore(settings.db_path, clock=clock)
        self.applier = TransactionApplier(settings.db_path, self.store, events=self.events, clock=clock)
        self.scheduler = SchedulerCore(self.store, self.applier, settings, clock=clock)
        self.recovery = RecoveryProcessor(
            settings.db_path, self.store, self.applier, self.scheduler, settings, clock=clock
        )
        self.reporter = StatusReporter(self.scheduler, self.store)
        self.cron = CronService(self.recovery, settings.sweep_minutes)
        self._initialised = False

    def init(self) -> None:
        if self._initialised:
            return
        db.initialise_database(self.settings.db_path)
        last_shutdown = self.recovery.last_shutdown()
        logger.info(
            "Initializing persistent scheduler (db=%s, last shutdown=%s)",
            self.settings.db_path,
            last_shutdown.isoformat() if last_shutdown else "unknown",
        )
        self.recovery.record_startup()
        if self.settings.autostart:
            self.scheduler.start()
            # The startup job runs the catch-up scan and registers every active job
            self.cron.start()
        self._initialised = True

    def shutdown(self) -> None:
        if not self._initialised:
            return
        try:
            self.recovery.record_shutdown()
        except Exception:
            logger.exception("Failed to record shutdown time")
        self.cron.stop()
        self.scheduler.shutdown()
        self.events.close()
        self._initialised = False
        logger.info("Scheduler shutdown complete")
