"""
Durable storage for recurring bill and payment jobs.

The ``jobs`` table is the source of truth; the in-memory scheduler is rebuilt
from it on every start. ``next_execution`` only ever moves forward, one
interval per applied occurrence, and every move is guarded by the value the
caller expects to replace so a second advance for the same occurrence is a
no-op.
"""
from __future__ import annotations

import logging
import math
import sqlite3
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional

from . import db
from .db import PathLike
from .errors import AccountNotFound, StorageUnavailable, ValidationError
from .intervals import IntervalSpec, is_sample_user, normalize, parse_ts, to_iso, utcnow
from .models import KINDS, Job, JobKey, to_cents

logger = logging.getLogger(__name__)

# Largest single bill or payment; keeps cents well inside SQLite INTEGER
MAX_AMOUNT = Decimal("1000000000")


def _parse_amount(amount: object) -> Decimal:
    if isinstance(amount, bool) or amount is None:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if isinstance(amount, float) and not math.isfinite(amount):
        raise ValidationError(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value == 0:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if abs(value) > MAX_AMOUNT:
        raise ValidationError(f"Amount {amount!r} exceeds the limit of {MAX_AMOUNT}")
    if to_cents(value) == 0:
        raise ValidationError(f"Amount {amount!r} rounds to zero cents")
    return value


class JobStore:
    def __init__(self, db_path: PathLike, clock: Callable[[], datetime] = utcnow) -> None:
        self._db_path = db_path
        self._clock = clock

    def _connect(self) -> sqlite3.Connection:
        return db.get_connection(self._db_path)

    @db.storage_retry
    def owner_exists(self, owner_id: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute("SELECT 1 FROM accounts WHERE owner_id = ? LIMIT 1", (owner_id,)).fetchone()
        finally:
            conn.close()
        return row is not None

    def create_job(
        self,
        owner_id: str,
        kind: str,
        amount: object,
        interval: object,
        name: Optional[str] = None,
        category: Optional[str] = None,
        start_time: Optional[datetime] = None,
    ) -> Job:
        """Validate and persist a new job with its first ``next_execution``.

        Bills are stored negative and payments positive whatever sign the
        caller sent.
        """
        if not owner_id or not isinstance(owner_id, str):
            raise ValidationError("Owner is required")
        if kind not in KINDS:
            raise ValidationError(f"Unknown kind {kind!r}; expected bill or payment")
        value = _parse_amount(amount)
        value = -abs(value) if kind == "bill" else abs(value)
        start = normalize(start_time) if start_time is not None else self._clock()
        spec = IntervalSpec.parse(interval, start, quick_time=is_sample_user(owner_id))

        if not self.owner_exists(owner_id):
            raise AccountNotFound(owner_id)

        key = JobKey(owner_id, kind, uuid.uuid4().hex)
        next_execution = spec.first_execution(start)
        self._insert(key, value, name, category, spec, start, next_execution)
        logger.info("Created %s %s: amount=%s interval=%s next=%s", kind, key, value, spec.frequency, to_iso(next_execution))
        job = self.get_job(key)
        if job is None:
            raise StorageUnavailable(f"Job {key} vanished right after insert")
        return job

    @db.storage_retry
    def _insert(
        self,
        key: JobKey,
        amount: Decimal,
        name: Optional[str],
        category: Optional[str],
        spec: IntervalSpec,
        start: datetime,
        next_execution: datetime,
    ) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO jobs (owner_id, kind, job_id, name, category, amount_cents, frequency, anchor_day, "
                "quick_time, start_time, next_execution, active, skipped_occurrences, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 0, ?)",
                (
                    key.owner_id,
                    key.kind,
                    key.job_id,
                    name,
                    category,
                    to_cents(amount),
                    spec.frequency,
                    spec.anchor_day,
                    1 if spec.quick_time else 0,
                    to_iso(start),
                    to_iso(next_execution),
                    to_iso(self._clock()),
                ),
            )
        finally:
            conn.close()

    @db.storage_retry
    def get_job(self, key: JobKey) -> Optional[Job]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM jobs WHERE owner_id = ? AND kind = ? AND job_id = ?",
                (key.owner_id, key.kind, key.job_id),
            ).fetchone()
        finally:
            conn.close()
        return Job.from_row(row) if row else None

    @db.storage_retry
    def list_active_jobs(self, owner_id: Optional[str] = None) -> List[Job]:
        query = "SELECT * FROM jobs WHERE active = 1"
        params: list = []
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY next_execution, owner_id, kind, job_id"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [Job.from_row(row) for row in rows]

    def advance(self, key: JobKey, occurrence_time: datetime, conn: Optional[sqlite3.Connection] = None) -> Optional[datetime]:
        """Move ``next_execution`` one step past ``occurrence_time``.

        A no-op when the stored value is no longer ``occurrence_time``; the
        current value is returned either way (``None`` for an unknown job).
        Pass ``conn`` to take part in a caller's open transaction.
        """
        if conn is not None:
            return self._advance(conn, key, occurrence_time)
        return self._advance_standalone(key, occurrence_time)

    @db.storage_retry
    def _advance_standalone(self, key: JobKey, occurrence_time: datetime) -> Optional[datetime]:
        conn = self._connect()
        try:
            with db.immediate_transaction(conn):
                return self._advance(conn, key, occurrence_time)
        finally:
            conn.close()

    @staticmethod
    def _advance(conn: sqlite3.Connection, key: JobKey, occurrence_time: datetime) -> Optional[datetime]:
        row = conn.execute(
            "SELECT * FROM jobs WHERE owner_id = ? AND kind = ? AND job_id = ?",
            (key.owner_id, key.kind, key.job_id),
        ).fetchone()
        if not row:
            return None
        job = Job.from_row(row)
        expected = to_iso(occurrence_time)
        if row["next_execution"] != expected:
            logger.debug("advance(%s, %s) ignored; next_execution is %s", key, expected, row["next_execution"])
            return job.next_execution
        new_next = job.interval.next_after(occurrence_time)
        conn.execute(
            "UPDATE jobs SET next_execution = ? WHERE owner_id = ? AND kind = ? AND job_id = ? AND next_execution = ?",
            (to_iso(new_next), key.owner_id, key.kind, key.job_id, expected),
        )
        return new_next

    @db.storage_retry
    def skip_ahead(self, key: JobKey, expected: datetime, resume_at: datetime, skipped: int) -> bool:
        """Collapse a backlog: jump from ``expected`` straight to ``resume_at``."""
        conn = self._connect()
        try:
            with db.immediate_transaction(conn):
                cur = conn.execute(
                    "UPDATE jobs SET next_execution = ?, skipped_occurrences = skipped_occurrences + ? "
                    "WHERE owner_id = ? AND kind = ? AND job_id = ? AND next_execution = ?",
                    (to_iso(resume_at), int(skipped), key.owner_id, key.kind, key.job_id, to_iso(expected)),
                )
                changed = cur.rowcount == 1
        finally:
            conn.close()
        if changed:
            logger.warning("Skipped %s backlog occurrences for %s; resuming at %s", skipped, key, to_iso(resume_at))
        return changed

    @db.storage_retry
    def deactivate(self, key: JobKey) -> bool:
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE jobs SET active = 0 WHERE owner_id = ? AND kind = ? AND job_id = ? AND active = 1",
                (key.owner_id, key.kind, key.job_id),
            )
            changed = cur.rowcount == 1
        finally:
            conn.close()
        if changed:
            logger.info("Deactivated %s", key)
        return changed

    @db.storage_retry
    def last_record_time(self, key: JobKey) -> Optional[datetime]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT MAX(occurrence_time) FROM transaction_records WHERE owner_id = ? AND kind = ? AND job_id = ?",
                (key.owner_id, key.kind, key.job_id),
            ).fetchone()
        finally:
            conn.close()
        return parse_ts(row[0]) if row and row[0] else None
