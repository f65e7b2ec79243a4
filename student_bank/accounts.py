"""Minimal account access used by the scheduler.

Profile management lives elsewhere; the scheduler only needs to know whether
an owner exists and to read or seed a balance.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from . import db
from .db import PathLike
from .intervals import to_iso, utcnow
from .models import from_cents, to_cents


@db.storage_retry
def create_account(db_path: PathLike, owner_id: str, balance: Decimal = Decimal("0"), teacher: Optional[str] = None) -> None:
    conn = db.get_connection(db_path)
    try:
        conn.execute(
            "INSERT OR IGNORE INTO accounts (owner_id, balance_cents, teacher, created_at) VALUES (?, ?, ?, ?)",
            (owner_id, to_cents(Decimal(balance)), teacher, to_iso(utcnow())),
        )
    finally:
        conn.close()


@db.storage_retry
def get_account(db_path: PathLike, owner_id: str) -> Optional[Dict[str, Any]]:
    conn = db.get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM accounts WHERE owner_id = ?", (owner_id,)).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    return {
        "ownerId": row["owner_id"],
        "balance": from_cents(row["balance_cents"]),
        "teacher": row["teacher"],
    }
