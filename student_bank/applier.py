"""
Apply one due occurrence of a job to its owner's balance.

The balance change, the history row and the job's ``next_execution`` advance
are committed in a single SQLite transaction. The ``transaction_records``
unique key on (job, occurrence_time) makes the operation idempotent: a second
attempt for the same occurrence returns the stored record and leaves the
balance alone, whether it comes from a retry, a live timer or a recovery scan.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from . import db
from .db import PathLike
from .errors import AccountNotFound, DuplicateOccurrence
from .events import EventSink, LoggingEventSink, TransactionEvent
from .intervals import normalize, parse_ts, to_iso, utcnow
from .jobstore import JobStore
from .models import Job, TransactionRecord, to_cents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyOutcome:
    record: TransactionRecord
    replayed: bool
    next_execution: Optional[datetime]


class TransactionApplier:
    def __init__(
        self,
        db_path: PathLike,
        store: JobStore,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db_path = db_path
        self._store = store
        self._events = events or LoggingEventSink()
        self._clock = clock

    def apply(self, job: Job, occurrence_time: datetime, catchup: bool = False) -> ApplyOutcome:
        """Apply ``job`` for ``occurrence_time``.

        Raises AccountNotFound when the owner is gone (the job is not
        advanced) and DuplicateOccurrence when the job has already moved past
        this occurrence without a record for it, e.g. after a catch-up
        collapse.
        """
        outcome = self._apply_once(job, normalize(occurrence_time), catchup)
        if outcome.replayed:
            logger.info("Replay of %s @ %s ignored; already applied", job.key, to_iso(occurrence_time))
            return outcome
        logger.info(
            "Applied %s %s: %s for %s @ %s%s",
            job.kind,
            job.key,
            outcome.record.amount,
            job.owner_id,
            to_iso(occurrence_time),
            " (catch-up)" if catchup else "",
        )
        self._emit(outcome.record, job.kind)
        return outcome

    @db.storage_retry
    def _apply_once(self, job: Job, occurrence: datetime, catchup: bool) -> ApplyOutcome:
        key = job.key
        occ = to_iso(occurrence)
        conn = db.get_connection(self._db_path)
        try:
            with db.immediate_transaction(conn):
                existing = conn.execute(
                    "SELECT * FROM transaction_records WHERE owner_id = ? AND kind = ? AND job_id = ? AND occurrence_time = ?",
                    (key.owner_id, key.kind, key.job_id, occ),
                ).fetchone()
                if existing:
                    current = conn.execute(
                        "SELECT next_execution FROM jobs WHERE owner_id = ? AND kind = ? AND job_id = ?",
                        (key.owner_id, key.kind, key.job_id),
                    ).fetchone()
                    return ApplyOutcome(
                        record=TransactionRecord.from_row(existing),
                        replayed=True,
                        next_execution=parse_ts(current[0]) if current else None,
                    )

                account = conn.execute(
                    "SELECT 1 FROM accounts WHERE owner_id = ?", (key.owner_id,)
                ).fetchone()
                if not account:
                    raise AccountNotFound(key.owner_id)

                row = conn.execute(
                    "SELECT next_execution FROM jobs WHERE owner_id = ? AND kind = ? AND job_id = ?",
                    (key.owner_id, key.kind, key.job_id),
                ).fetchone()
                if not row or row["next_execution"] != occ:
                    raise DuplicateOccurrence(
                        f"{key} is not due at {occ} (next_execution={row['next_execution'] if row else None})"
                    )

                cents = to_cents(job.amount)
                applied_at = self._clock()
                # Atomic increment; never read-modify-write a cached balance
                conn.execute(
                    "UPDATE accounts SET balance_cents = balance_cents + ? WHERE owner_id = ?",
                    (cents, key.owner_id),
                )
                conn.execute(
                    "INSERT INTO transaction_records (owner_id, kind, job_id, name, category, amount_cents, "
                    "occurrence_time, applied_at, catchup) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        key.owner_id,
                        key.kind,
                        key.job_id,
                        job.name,
                        job.category,
                        cents,
                        occ,
                        to_iso(applied_at),
                        1 if catchup else 0,
                    ),
                )
                next_execution = self._store.advance(key, occurrence, conn=conn)
        finally:
            conn.close()

        record = TransactionRecord(
            owner_id=key.owner_id,
            job_key=key,
            amount=job.amount,
            applied_at=normalize(applied_at),
            occurrence_time=occurrence,
            catchup=catchup,
            name=job.name,
            category=job.category,
        )
        return ApplyOutcome(record=record, replayed=False, next_execution=next_execution)

    def _emit(self, record: TransactionRecord, kind: str) -> None:
        event = TransactionEvent(
            owner_id=record.owner_id,
            kind=kind,
            job_key=str(record.job_key),
            amount=float(record.amount),
            occurrence_time=to_iso(record.occurrence_time),
            applied_at=to_iso(record.applied_at),
            catchup=record.catchup,
        )
        try:
            self._events.emit(event)
        except Exception:
            logger.exception("Transaction event delivery failed for %s", record.job_key)
