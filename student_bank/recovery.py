"""
Catch-up for occurrences that came due while the server was down.

A live timer cannot fire while the process is stopped, so on startup (and on
a periodic sweep) every active job whose ``next_execution`` has passed is
driven through the same ``TransactionApplier.apply`` path the live scheduler
uses. Occurrences are applied oldest first, one at a time, under the job's
scheduler lock.

Long outages are bounded by ``catchup_cap``: at most that many occurrences
are backfilled per job per pass; the rest of the backlog is collapsed to the
first future occurrence and counted in ``jobs.skipped_occurrences``.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from . import db
from .applier import TransactionApplier
from .config import Settings
from .db import PathLike
from .errors import AccountNotFound, DuplicateOccurrence
from .intervals import normalize, parse_ts, to_iso, utcnow
from .jobstore import JobStore
from .models import JobKey, from_cents
from .scheduler import SchedulerCore

logger = logging.getLogger(__name__)


@dataclass
class RecoverySummary:
    processed: int = 0
    skipped: int = 0
    jobs_recovered: int = 0
    jobs_scanned: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        return {
            "totalProcessed": data["processed"],
            "totalSkipped": data["skipped"],
            "jobsRecovered": data["jobs_recovered"],
            "jobsScanned": data["jobs_scanned"],
            "failed": data["failed"],
        }


class RecoveryProcessor:
    def __init__(
        self,
        db_path: PathLike,
        store: JobStore,
        applier: TransactionApplier,
        scheduler: SchedulerCore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db_path = db_path
        self._store = store
        self._applier = applier
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock

    def scan(self, now: Optional[datetime] = None) -> RecoverySummary:
        """Backfill overdue occurrences and (re)register every active job."""
        now = normalize(now) if now is not None else self._clock()
        summary = RecoverySummary()
        logger.info("Starting catch-up check at %s", to_iso(now))

        jobs = self._store.list_active_jobs()
        for job in jobs:
            summary.jobs_scanned += 1
            try:
                processed, skipped = self._scheduler.run_locked(job.key, lambda: self._recover_job(job.key, now))
            except AccountNotFound as exc:
                # Left active; the live timer retries with backoff
                logger.warning("Catch-up for %s deferred: %s", job.key, exc)
                summary.failed += 1
                processed, skipped = 0, 0
            except Exception:
                logger.exception("Catch-up failed for %s", job.key)
                summary.failed += 1
                processed, skipped = 0, 0

            summary.processed += processed
            summary.skipped += skipped
            if processed or skipped:
                summary.jobs_recovered += 1

            try:
                current = self._store.get_job(job.key)
                if current is not None and current.active:
                    self._scheduler.register(current)
            except Exception:
                logger.exception("Could not register %s after catch-up", job.key)

        logger.info(
            "Catch-up complete: %s processed, %s skipped, %s/%s jobs recovered, %s failed",
            summary.processed,
            summary.skipped,
            summary.jobs_recovered,
            summary.jobs_scanned,
            summary.failed,
        )
        return summary

    def _recover_job(self, key: JobKey, now: datetime) -> Tuple[int, int]:
        # Reload under the lock; the live timer may have moved it already
        job = self._store.get_job(key)
        if job is None or not job.active or job.next_execution > now:
            return 0, 0

        cap = max(0, int(self._settings.catchup_cap))
        processed = 0
        last_due: Optional[datetime] = None
        backlog_start: Optional[datetime] = None
        backlog = 0
        for due in job.interval.iter_occurrences(job.next_execution, now):
            last_due = due
            if processed < cap and backlog == 0:
                logger.info("Found missed %s %s due %s", job.kind, key, to_iso(due))
                try:
                    self._applier.apply(job, due, catchup=True)
                except DuplicateOccurrence as exc:
                    logger.debug("Catch-up for %s stopped: %s", key, exc)
                    return processed, 0
                processed += 1
                continue
            if backlog == 0:
                backlog_start = due
            backlog += 1

        if backlog and backlog_start is not None and last_due is not None:
            resume_at = job.interval.next_after(last_due)
            if self._store.skip_ahead(key, backlog_start, resume_at, backlog):
                return processed, backlog
        return processed, 0

    # --------- server status ---------

    @db.storage_retry
    def _record_event(self, event: str) -> None:
        conn = db.get_connection(self._db_path)
        try:
            conn.execute(
                "INSERT INTO server_status (event, recorded_at) VALUES (?, ?)",
                (event, to_iso(self._clock())),
            )
        finally:
            conn.close()

    def record_startup(self) -> None:
        self._record_event("startup")

    def record_shutdown(self) -> None:
        self._record_event("shutdown")
        logger.info("Server shutdown time recorded for catch-up reference")

    @db.storage_retry
    def last_shutdown(self) -> Optional[datetime]:
        conn = db.get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT MAX(recorded_at) FROM server_status WHERE event = 'shutdown'"
            ).fetchone()
        finally:
            conn.close()
        return parse_ts(row[0]) if row and row[0] else None

    @db.storage_retry
    def catchup_stats(self, days: int = 7) -> Dict[str, Any]:
        since = to_iso(self._clock() - timedelta(days=days))
        conn = db.get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS total, COALESCE(SUM(amount_cents), 0) AS cents "
                "FROM transaction_records WHERE catchup = 1 AND occurrence_time >= ?",
                (since,),
            ).fetchone()
            users = [
                r[0]
                for r in conn.execute(
                    "SELECT DISTINCT owner_id FROM transaction_records WHERE catchup = 1 AND occurrence_time >= ? "
                    "ORDER BY owner_id",
                    (since,),
                ).fetchall()
            ]
        finally:
            conn.close()
        return {
            "totalCatchupTransactions": int(row["total"]),
            "totalAmount": float(from_cents(row["cents"])),
            "users": users,
        }
