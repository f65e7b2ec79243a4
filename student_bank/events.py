"""
Transaction events for the lesson condition engine.

Every applied occurrence is reported so lessons can react to a student's bills
and paychecks. Delivery is fire-and-forget: a failed or slow delivery is
logged and never touches the financial write that produced the event.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionEvent:
    owner_id: str
    kind: str
    job_key: str
    amount: float
    occurrence_time: str
    applied_at: str
    catchup: bool = False

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "studentName": data["owner_id"],
            "type": data["kind"],
            "jobKey": data["job_key"],
            "amount": data["amount"],
            "occurrenceTime": data["occurrence_time"],
            "appliedAt": data["applied_at"],
            "catchup": data["catchup"],
        }


class EventSink:
    """Receives one event per applied occurrence."""

    def emit(self, event: TransactionEvent) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class LoggingEventSink(EventSink):
    def emit(self, event: TransactionEvent) -> None:
        logger.info(
            "Transaction event: %s %s %.2f for %s at %s",
            event.kind,
            event.job_key,
            event.amount,
            event.owner_id,
            event.occurrence_time,
        )


class HttpEventSink(EventSink):
    """POSTs events to the lesson engine from a small background pool."""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="lesson-events")

    def emit(self, event: TransactionEvent) -> None:
        self._pool.submit(self._deliver, event)

    def _deliver(self, event: TransactionEvent) -> None:
        try:
            resp = self._client.post(self._url, json=event.to_payload())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Lesson engine delivery failed for %s: %s", event.job_key, exc)
        except Exception:
            logger.exception("Lesson engine delivery crashed for %s", event.job_key)

    def close(self) -> None:
        # Drain queued deliveries before the client goes away; each is bounded by the client timeout
        self._pool.shutdown(wait=True)
        self._client.close()


def build_event_sink(url: Optional[str]) -> EventSink:
    if url:
        return HttpEventSink(url)
    return LoggingEventSink()
