# student_bank/intervals.py
"""
Recurrence rules for bills and payments.

An interval is a pure step function from one due timestamp to the next.
Monthly and yearly steps keep the anchor day of the job's start date, so a
bill started on Jan 31 runs on Feb 28 and then again on Mar 31 instead of
drifting to the 28th forever.

Sample accounts run in quick-time mode: one simulated day passes every real
second, so a weekly bill comes due every 7 seconds.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

from .errors import ValidationError

FREQUENCIES = ("weekly", "bi-weekly", "monthly", "yearly")

# Simulated days per interval in quick-time mode (1 second = 1 day)
QUICK_TIME_DAYS = {
    "weekly": 7,
    "bi-weekly": 14,
    "monthly": 30,
    "yearly": 365,
}

# --------- Helpers: timestamps ---------

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def normalize(ts: datetime) -> datetime:
    """UTC, second resolution; naive values are taken to be UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0)


def to_iso(ts: datetime) -> str:
    return normalize(ts).isoformat()


def parse_ts(value: str) -> datetime:
    return normalize(datetime.fromisoformat(value))


def is_sample_user(owner_id: Optional[str]) -> bool:
    return bool(owner_id) and "sample" in owner_id.lower()

# --------- Helpers: calendar ---------

def _clamp_day(year: int, month: int, day: int) -> int:
    last_day = calendar.monthrange(year, month)[1]
    return max(1, min(day, last_day))


def _add_months_keep_dom(current: datetime, months: int, desired_day: Optional[int]) -> datetime:
    total_months = current.year * 12 + current.month - 1 + months
    y = total_months // 12
    m = total_months % 12 + 1
    day = int(desired_day) if desired_day is not None else current.day
    return current.replace(year=y, month=m, day=_clamp_day(y, m, day))


@dataclass(frozen=True)
class IntervalSpec:
    frequency: str
    anchor_day: Optional[int] = None
    quick_time: bool = False

    @classmethod
    def parse(cls, frequency: object, start_time: datetime, quick_time: bool = False) -> "IntervalSpec":
        if not isinstance(frequency, str) or frequency.strip().lower() not in FREQUENCIES:
            raise ValidationError(
                f"Unknown interval {frequency!r}; expected one of {', '.join(FREQUENCIES)}"
            )
        freq = frequency.strip().lower()
        anchor = normalize(start_time).day if freq in ("monthly", "yearly") else None
        return cls(frequency=freq, anchor_day=anchor, quick_time=quick_time)

    def next_after(self, current: datetime) -> datetime:
        current = normalize(current)
        if self.quick_time:
            return current + timedelta(seconds=QUICK_TIME_DAYS[self.frequency])
        if self.frequency == "weekly":
            return current + timedelta(days=7)
        if self.frequency == "bi-weekly":
            return current + timedelta(days=14)
        if self.frequency == "monthly":
            return _add_months_keep_dom(current, 1, self.anchor_day)
        if self.frequency == "yearly":
            # Feb 29th clamps to Feb 28th in non-leap years
            return _add_months_keep_dom(current, 12, self.anchor_day)
        raise ValidationError(f"Unknown interval {self.frequency!r}")

    def first_execution(self, start_time: datetime) -> datetime:
        return self.next_after(start_time)

    def iter_occurrences(self, first_due: datetime, now: datetime) -> Iterator[datetime]:
        """Due times from ``first_due`` up to and including ``now``, oldest first."""
        due = normalize(first_due)
        now = normalize(now)
        while due <= now:
            yield due
            due = self.next_after(due)

    def occurrences_between(self, first_due: datetime, now: datetime) -> List[datetime]:
        return list(self.iter_occurrences(first_due, now))

    def first_after(self, due: datetime, now: datetime) -> datetime:
        """First occurrence strictly in the future, stepping from ``due``."""
        due = normalize(due)
        now = normalize(now)
        while due <= now:
            due = self.next_after(due)
        return due
