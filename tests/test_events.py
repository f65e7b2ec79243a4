import json
import logging

import httpx

from student_bank.events import HttpEventSink, LoggingEventSink, TransactionEvent, build_event_sink


def _event(job_key="alice-bill-abc"):
    return TransactionEvent(
        owner_id="alice",
        kind="bill",
        job_key=job_key,
        amount=-50.0,
        occurrence_time="2026-03-09T09:00:00+00:00",
        applied_at="2026-03-09T09:00:00+00:00",
    )


def test_http_sink_posts_payload_and_close_waits_for_delivery():
    received = []

    def handler(request):
        received.append((str(request.url), json.loads(request.content)))
        return httpx.Response(204)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    sink = HttpEventSink("http://lessons.test/events", client=client)
    sink.emit(_event())
    sink.close()

    assert len(received) == 1
    url, body = received[0]
    assert url == "http://lessons.test/events"
    assert body["studentName"] == "alice"
    assert body["jobKey"] == "alice-bill-abc"
    assert body["amount"] == -50.0


def test_http_sink_logs_rejected_delivery(caplog):
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    sink = HttpEventSink("http://lessons.test/events", client=client)
    with caplog.at_level(logging.WARNING, logger="student_bank.events"):
        sink.emit(_event())
        sink.close()

    assert "Lesson engine delivery failed for alice-bill-abc" in caplog.text


def test_http_sink_logs_unexpected_delivery_crash(caplog):
    def handler(request):
        raise RuntimeError("client torn down")

    client = httpx.Client(transport=httpx.MockTransport(handler))
    sink = HttpEventSink("http://lessons.test/events", client=client)
    with caplog.at_level(logging.ERROR, logger="student_bank.events"):
        sink.emit(_event())
        sink.close()

    assert "Lesson engine delivery crashed for alice-bill-abc" in caplog.text


def test_build_event_sink_picks_http_only_with_url():
    assert isinstance(build_event_sink(None), LoggingEventSink)
    sink = build_event_sink("http://lessons.test/events")
    try:
        assert isinstance(sink, HttpEventSink)
    finally:
        sink.close()
