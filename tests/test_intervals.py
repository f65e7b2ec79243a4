from datetime import datetime, timedelta, timezone

import pytest

from student_bank.errors import ValidationError
from student_bank.intervals import IntervalSpec, is_sample_user, normalize, to_iso


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_weekly_and_biweekly_steps():
    start = _utc(2026, 3, 2, 9, 0)
    assert IntervalSpec.parse("weekly", start).next_after(start) == start + timedelta(days=7)
    assert IntervalSpec.parse("bi-weekly", start).next_after(start) == start + timedelta(days=14)


def test_monthly_keeps_anchor_day_after_short_month():
    start = _utc(2026, 1, 31, 8, 30)
    spec = IntervalSpec.parse("monthly", start)
    feb = spec.next_after(start)
    assert feb == _utc(2026, 2, 28, 8, 30)
    assert spec.next_after(feb) == _utc(2026, 3, 31, 8, 30)


def test_yearly_leap_day_clamps():
    start = _utc(2024, 2, 29)
    spec = IntervalSpec.parse("yearly", start)
    assert spec.next_after(start) == _utc(2025, 2, 28)
    assert spec.next_after(_utc(2027, 2, 28)) == _utc(2028, 2, 29)


def test_quick_time_uses_seconds_per_day():
    start = _utc(2026, 3, 2, 9, 0)
    spec = IntervalSpec.parse("monthly", start, quick_time=True)
    assert spec.next_after(start) == start + timedelta(seconds=30)
    assert is_sample_user("SampleStudent1")
    assert not is_sample_user("alice")


@pytest.mark.parametrize("bad", ["daily", "once", "", None, 7])
def test_unknown_interval_rejected(bad):
    with pytest.raises(ValidationError):
        IntervalSpec.parse(bad, _utc(2026, 3, 2))


def test_occurrences_between_is_chronological_and_inclusive():
    first = _utc(2026, 3, 2)
    spec = IntervalSpec.parse("weekly", first)
    due = spec.occurrences_between(first, first + timedelta(days=14))
    assert due == [first, first + timedelta(days=7), first + timedelta(days=14)]
    assert spec.first_after(first, first + timedelta(days=14)) == first + timedelta(days=21)


def test_normalize_truncates_and_assumes_utc():
    naive = datetime(2026, 3, 2, 9, 0, 5, 123456)
    assert to_iso(naive) == "2026-03-02T09:00:05+00:00"
    assert normalize(naive).tzinfo is not None
