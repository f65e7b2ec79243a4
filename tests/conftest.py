import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure project root is on sys.path for imports like 'student_bank.db'
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from student_bank import accounts, db  # noqa: E402
from student_bank.config import Settings  # noqa: E402
from student_bank.events import EventSink  # noqa: E402
from student_bank.runtime import SchedulerRuntime  # noqa: E402

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock shared by every component under test."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink(EventSink):
    def __init__(self) -> None:
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(START)


@pytest.fixture()
def db_path(tmp_path) -> Path:
    path = tmp_path / "bank_test.sqlite3"
    db.initialise_database(path)
    return path


@pytest.fixture()
def settings(db_path) -> Settings:
    return Settings(
        db_path=db_path,
        log_dir=None,
        catchup_cap=5,
        max_retries=2,
        retry_base_seconds=10,
        retry_max_seconds=60,
        max_concurrent_jobs=4,
        apply_timeout_seconds=5,
        sweep_minutes=15,
        lesson_engine_url=None,
        autostart=False,
    )


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def runtime(settings, clock, sink) -> SchedulerRuntime:
    rt = SchedulerRuntime(settings, clock=clock, events=sink)
    rt.init()
    try:
        yield rt
    finally:
        rt.shutdown()


@pytest.fixture()
def make_account(db_path):
    def _make(owner_id: str, balance: str = "1000") -> str:
        accounts.create_account(db_path, owner_id, Decimal(balance))
        return owner_id

    return _make


@pytest.fixture()
def balance_of(db_path):
    def _balance(owner_id: str) -> Decimal:
        return accounts.get_account(db_path, owner_id)["balance"]

    return _balance


@pytest.fixture()
def db_conn(db_path):
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def app_client(runtime):
    from fastapi.testclient import TestClient
    from student_bank.main import create_app

    app = create_app(runtime=runtime)
    with TestClient(app) as client:
        yield client
