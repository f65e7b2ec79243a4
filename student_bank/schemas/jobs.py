from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class BillParcel(BaseModel):
    # [profile, kind, amount, interval, name, category, date]
    parcel: List[Any] = Field(..., min_length=6, max_length=7)


class JobCreate(BaseModel):
    owner_id: str = Field(..., min_length=1)
    kind: str                    # "bill" | "payment"
    amount: Decimal
    interval: str                # "weekly" | "bi-weekly" | "monthly" | "yearly"
    name: Optional[str] = None
    category: Optional[str] = None
    start_time: Optional[datetime] = None

    @field_validator("owner_id", mode="before")
    @classmethod
    def _owner_from_profile(cls, value: Union[str, Dict[str, Any], None]) -> Any:
        # Clients send the whole profile; the account holder is the owner
        if isinstance(value, dict):
            return value.get("memberName") or value.get("accountHolder")
        return value

    @field_validator("start_time", mode="before")
    @classmethod
    def _blank_date(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_parcel(cls, parcel: List[Any]) -> "JobCreate":
        fields = list(parcel) + [None] * (7 - len(parcel))
        profile, kind, amount, interval, name, category, date = fields[:7]
        return cls(
            owner_id=profile,
            kind=kind,
            amount=amount,
            interval=interval,
            name=name,
            category=category,
            start_time=date,
        )


class JobSummary(BaseModel):
    key: str
    jobId: str
    ownerId: str
    kind: str
    amount: float
    name: Optional[str] = None
    category: Optional[str] = None
    interval: str
    quickTime: bool = False
    startTime: str
    nextExecution: str
    active: bool
    skippedOccurrences: int = 0
