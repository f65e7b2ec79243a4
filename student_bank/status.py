"""Read-only views of the scheduler for status polling."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .intervals import to_iso
from .jobstore import JobStore
from .scheduler import SchedulerCore


class StatusReporter:
    def __init__(self, scheduler: SchedulerCore, store: JobStore) -> None:
        self._scheduler = scheduler
        self._store = store

    def get_status(self) -> Dict[str, Any]:
        """What is armed to fire right now, straight from the live registry."""
        jobs = self._scheduler.snapshot()
        return {
            "totalScheduledJobs": len(jobs),
            "running": self._scheduler.running,
            "jobs": jobs,
        }

    def get_user_jobs(self, owner_id: str) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        """Stored bills and payments for one owner, with live timer state merged in.

        Returns ``None`` for an unknown owner.
        """
        if not self._store.owner_exists(owner_id):
            return None
        result: Dict[str, List[Dict[str, Any]]] = {"bills": [], "payments": []}
        for job in self._store.list_active_jobs(owner_id):
            item = job.to_dict()
            entry = self._scheduler.get_entry(job.key)
            item["status"] = entry.state if entry is not None else "untracked"
            item["failures"] = entry.failures if entry is not None else 0
            last = self._store.last_record_time(job.key)
            item["lastApplied"] = to_iso(last) if last else None
            result["bills" if job.kind == "bill" else "payments"].append(item)
        return result
