"""
Live timer registry for recurring jobs.

Each active job has one entry here and, once the scheduler is started, one
APScheduler date job armed for its ``next_execution``. APScheduler's loop
sleeps until the earliest armed run time, so there is no fixed-interval
polling. A bounded thread pool caps how many jobs fire at once, which matters
right after recovery when many jobs come due together.

Per job the states are::

    scheduled -> firing -> scheduled
                        -> retrying / error -> firing ...
    any       -> deactivated (terminal)

A per-key lock serializes firing with recovery for the same job.
"""
from __future__ import annotations

import concurrent.futures
import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, TypeVar

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from .applier import ApplyOutcome, TransactionApplier
from .config import Settings
from .errors import AccountNotFound, DuplicateOccurrence, StorageUnavailable
from .intervals import normalize, to_iso, utcnow
from .jobstore import JobStore
from .models import Job, JobKey

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEDULED = "scheduled"
FIRING = "firing"
RETRYING = "retrying"
ERROR = "error"
DEACTIVATED = "deactivated"


@dataclass
class JobEntry:
    key: JobKey
    next_execution: datetime
    run_at: datetime
    state: str = SCHEDULED
    failures: int = 0
    last_error: Optional[str] = None
    timer_id: Optional[str] = None

    def snapshot(self) -> Dict[str, object]:
        return {
            "key": str(self.key),
            "ownerId": self.key.owner_id,
            "kind": self.key.kind,
            "jobId": self.key.job_id,
            "nextExecution": to_iso(self.next_execution),
            "runAt": to_iso(self.run_at),
            "status": self.state,
            "failures": self.failures,
            "lastError": self.last_error,
        }


class SchedulerCore:
    def __init__(
        self,
        store: JobStore,
        applier: TransactionApplier,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._applier = applier
        self._settings = settings
        self._clock = clock
        self._entries: Dict[JobKey, JobEntry] = {}
        self._registry_lock = threading.RLock()
        self._key_locks: Dict[JobKey, threading.Lock] = {}
        self._timer_seq = itertools.count(1)
        self._scheduler: Optional[BackgroundScheduler] = None
        self._apply_pool: Optional[concurrent.futures.ThreadPoolExecutor] = None

    # --------- lifecycle ---------

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if self._scheduler is not None:
            logger.info("SchedulerCore already started; ignoring duplicate start.")
            return
        workers = max(1, int(self._settings.max_concurrent_jobs))
        scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )
        scheduler.start()
        self._apply_pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="apply")
        self._scheduler = scheduler
        with self._registry_lock:
            for entry in self._entries.values():
                self._arm(entry, entry.run_at)
        logger.info("SchedulerCore started with %s tracked jobs (max %s concurrent).", len(self._entries), workers)

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.shutdown(wait=False)
            if self._apply_pool is not None:
                self._apply_pool.shutdown(wait=False)
            logger.info("SchedulerCore stopped.")
        finally:
            self._scheduler = None
            self._apply_pool = None
            with self._registry_lock:
                for entry in self._entries.values():
                    entry.timer_id = None

    # --------- registry ---------

    def register(self, job: Job) -> Optional[JobEntry]:
        """Track ``job`` and arm its timer; a due job fires right away."""
        if not job.active:
            self.deactivate(job.key)
            return None
        with self._registry_lock:
            entry = self._entries.get(job.key)
            if entry is None:
                entry = JobEntry(key=job.key, next_execution=job.next_execution, run_at=job.next_execution)
                self._entries[job.key] = entry
            elif entry.state == FIRING:
                # The firing path re-arms from storage when it finishes
                entry.next_execution = job.next_execution
                return entry
            elif entry.state in (RETRYING, ERROR) and entry.next_execution == job.next_execution:
                # Same occurrence still failing; keep the backoff timer and count
                return entry
            entry.next_execution = job.next_execution
            entry.state = SCHEDULED
            entry.failures = 0
            entry.last_error = None
            self._arm(entry, max(job.next_execution, self._clock()))
        return entry

    def deactivate(self, key: JobKey) -> bool:
        """Stop tracking ``key``. An apply already in flight is left to finish."""
        with self._registry_lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._cancel_timer(entry)
            entry.state = DEACTIVATED
            lock = self._key_locks.get(key)
            if lock is not None and not lock.locked():
                del self._key_locks[key]
        logger.info("Stopped tracking %s", key)
        return True

    def get_entry(self, key: JobKey) -> Optional[JobEntry]:
        with self._registry_lock:
            return self._entries.get(key)

    def snapshot(self) -> List[Dict[str, object]]:
        with self._registry_lock:
            entries = sorted(self._entries.values(), key=lambda e: (e.run_at, e.key))
            return [entry.snapshot() for entry in entries]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._entries)

    def run_locked(self, key: JobKey, func: Callable[[], T]) -> T:
        with self._lock_for(key):
            return func()

    def _lock_for(self, key: JobKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    # --------- timers ---------

    def _arm(self, entry: JobEntry, run_at: datetime) -> None:
        self._cancel_timer(entry)
        entry.run_at = normalize(run_at)
        if self._scheduler is None:
            return
        # A fresh id per arming; a finished date job may still be removing its old id
        timer_id = f"{entry.key}#{next(self._timer_seq)}"
        self._scheduler.add_job(
            self.fire,
            trigger="date",
            run_date=entry.run_at,
            args=[entry.key],
            id=timer_id,
            name=str(entry.key),
        )
        entry.timer_id = timer_id

    def _cancel_timer(self, entry: JobEntry) -> None:
        if entry.timer_id is None or self._scheduler is None:
            entry.timer_id = None
            return
        try:
            self._scheduler.remove_job(entry.timer_id)
        except JobLookupError:
            pass
        entry.timer_id = None

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """Fire every entry whose timer is due; used when the loop is not running."""
        now = normalize(now) if now is not None else self._clock()
        with self._registry_lock:
            due = [e.key for e in sorted(self._entries.values(), key=lambda e: e.run_at) if e.run_at <= now]
        for key in due:
            self.fire(key)
        return len(due)

    # --------- firing ---------

    def fire(self, key: JobKey) -> Optional[ApplyOutcome]:
        """Apply the due occurrence of ``key`` and re-arm its timer.

        Never raises: failures are logged and turned into a retry timer.
        """
        with self._lock_for(key):
            with self._registry_lock:
                entry = self._entries.get(key)
                if entry is None or entry.state == DEACTIVATED:
                    return None
                entry.state = FIRING
                entry.timer_id = None
            try:
                return self._fire_entry(entry)
            except Exception:
                logger.exception("Failure handling for %s broke; falling back to the slowest retry", key)
                return None
            finally:
                self._ensure_armed(entry)

    def _fire_entry(self, entry: JobEntry) -> Optional[ApplyOutcome]:
        key = entry.key
        try:
            job = self._store.get_job(key)
            if job is None or not job.active:
                self.deactivate(key)
                return None
            if job.next_execution > self._clock():
                # Early wake-up or already advanced by recovery
                self._rearm(entry, job.next_execution)
                return None
            outcome = self._call_apply(job)
        except DuplicateOccurrence as exc:
            logger.debug("Duplicate occurrence for %s absorbed: %s", key, exc)
            self._rearm_from_store(entry)
            return None
        except (AccountNotFound, StorageUnavailable, concurrent.futures.TimeoutError) as exc:
            self._schedule_retry(entry, exc)
            return None
        except Exception as exc:
            logger.exception("Unexpected failure firing %s", key)
            self._schedule_retry(entry, exc)
            return None

        entry.failures = 0
        entry.last_error = None
        if outcome.next_execution is None:
            self._rearm_from_store(entry)
        else:
            self._rearm(entry, outcome.next_execution)
        return outcome

    def _ensure_armed(self, entry: JobEntry) -> None:
        # A tracked entry must never be left firing without a timer
        with self._registry_lock:
            if entry.state != FIRING or self._entries.get(entry.key) is not entry:
                return
            entry.state = ERROR
            self._arm(entry, self._clock() + timedelta(seconds=self._settings.retry_max_seconds))

    def _call_apply(self, job: Job) -> ApplyOutcome:
        if self._apply_pool is None:
            return self._applier.apply(job, job.next_execution)
        future = self._apply_pool.submit(self._applier.apply, job, job.next_execution)
        # A stalled attempt is abandoned; a late commit is absorbed by the replay guard
        return future.result(timeout=self._settings.apply_timeout_seconds)

    def _rearm(self, entry: JobEntry, next_execution: datetime) -> None:
        with self._registry_lock:
            if entry.state == DEACTIVATED or self._entries.get(entry.key) is not entry:
                logger.info("Not re-arming %s; it was deactivated while firing", entry.key)
                return
            entry.next_execution = normalize(next_execution)
            entry.state = SCHEDULED
            self._arm(entry, max(entry.next_execution, self._clock()))

    def _rearm_from_store(self, entry: JobEntry) -> None:
        try:
            job = self._store.get_job(entry.key)
        except StorageUnavailable as exc:
            self._schedule_retry(entry, exc)
            return
        if job is None or not job.active:
            self.deactivate(entry.key)
            return
        self._rearm(entry, job.next_execution)

    def _schedule_retry(self, entry: JobEntry, exc: BaseException) -> None:
        with self._registry_lock:
            if entry.state == DEACTIVATED or self._entries.get(entry.key) is not entry:
                return
            entry.failures += 1
            entry.last_error = str(exc) or exc.__class__.__name__
            if entry.failures > self._settings.max_retries:
                entry.state = ERROR
                delay = self._settings.retry_max_seconds
                logger.error(
                    "%s failed %s times in a row (%s); marked degraded, next attempt in %ss",
                    entry.key,
                    entry.failures,
                    entry.last_error,
                    delay,
                )
            else:
                entry.state = RETRYING
                delay = min(
                    self._settings.retry_base_seconds * (2 ** (entry.failures - 1)),
                    self._settings.retry_max_seconds,
                )
                logger.warning(
                    "%s failed (%s); retry %s/%s in %ss",
                    entry.key,
                    entry.last_error,
                    entry.failures,
                    self._settings.max_retries,
                    delay,
                )
            self._arm(entry, self._clock() + timedelta(seconds=delay))
