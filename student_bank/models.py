from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from .intervals import IntervalSpec, parse_ts, to_iso

KINDS = ("bill", "payment")

_CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((amount / _CENT).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * _CENT).quantize(_CENT)


@dataclass(frozen=True, order=True)
class JobKey:
    """Structured job identifier; ``str()`` gives the display form."""

    owner_id: str
    kind: str
    job_id: str

    def __str__(self) -> str:
        return f"{self.owner_id}-{self.kind}-{self.job_id}"


@dataclass(frozen=True)
class Job:
    key: JobKey
    amount: Decimal
    name: Optional[str]
    category: Optional[str]
    interval: IntervalSpec
    start_time: datetime
    next_execution: datetime
    active: bool
    skipped_occurrences: int
    created_at: datetime

    @property
    def owner_id(self) -> str:
        return self.key.owner_id

    @property
    def kind(self) -> str:
        return self.key.kind

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            key=JobKey(row["owner_id"], row["kind"], row["job_id"]),
            amount=from_cents(row["amount_cents"]),
            name=row["name"],
            category=row["category"],
            interval=IntervalSpec(
                frequency=row["frequency"],
                anchor_day=row["anchor_day"],
                quick_time=bool(row["quick_time"]),
            ),
            start_time=parse_ts(row["start_time"]),
            next_execution=parse_ts(row["next_execution"]),
            active=bool(row["active"]),
            skipped_occurrences=int(row["skipped_occurrences"]),
            created_at=parse_ts(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": str(self.key),
            "jobId": self.key.job_id,
            "ownerId": self.owner_id,
            "kind": self.kind,
            "amount": float(self.amount),
            "name": self.name,
            "category": self.category,
            "interval": self.interval.frequency,
            "quickTime": self.interval.quick_time,
            "startTime": to_iso(self.start_time),
            "nextExecution": to_iso(self.next_execution),
            "active": self.active,
            "skippedOccurrences": self.skipped_occurrences,
        }


@dataclass(frozen=True)
class TransactionRecord:
    owner_id: str
    job_key: JobKey
    amount: Decimal
    applied_at: datetime
    occurrence_time: datetime
    catchup: bool = False
    name: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TransactionRecord":
        return cls(
            owner_id=row["owner_id"],
            job_key=JobKey(row["owner_id"], row["kind"], row["job_id"]),
            amount=from_cents(row["amount_cents"]),
            applied_at=parse_ts(row["applied_at"]),
            occurrence_time=parse_ts(row["occurrence_time"]),
            catchup=bool(row["catchup"]),
            name=row["name"],
            category=row["category"],
        )
