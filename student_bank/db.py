"""
Database connection and initialization helpers.
This file is the single source of truth for opening the SQLite connection.
"""

import functools
import logging
import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Iterator, TypeVar, Union

from fastapi import Request
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from . import config
from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
T = TypeVar("T")


def get_connection(db_path: PathLike) -> sqlite3.Connection:
    # Autocommit mode: writers open their own BEGIN IMMEDIATE transactions
    conn = sqlite3.connect(
        str(db_path),
        timeout=config.SQLITE_BUSY_TIMEOUT,
        check_same_thread=False,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    return conn


def get_db_conn(request: Request) -> Generator[sqlite3.Connection, None, None]:
    """
    Dependency for FastAPI to get database connection.
    """
    conn = get_connection(request.app.state.runtime.settings.db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Take the write lock up front so concurrent writers serialize cleanly."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def storage_retry(func: Callable[..., T]) -> Callable[..., T]:
    """Retry transient sqlite errors, then surface them as StorageUnavailable."""
    retrying = retry(
        retry=retry_if_exception_type(sqlite3.OperationalError),
        stop=stop_after_attempt(config.STORAGE_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.25, max=config.STORAGE_RETRY_MAX_WAIT),
        reraise=True,
    )(func)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except sqlite3.OperationalError as exc:
            logger.error("Storage unavailable in %s: %s", func.__qualname__, exc)
            raise StorageUnavailable(str(exc)) from exc

    return wrapper


def _reset_database_if_requested(db_path: Path) -> None:
    """FORCE_DB_RESET=1 removes the database file before tables are created."""
    if os.environ.get("FORCE_DB_RESET", "").strip() != "1":
        return
    if db_path.exists():
        logger.warning("FORCE_DB_RESET=1: removing %s", db_path)
        db_path.unlink()


def initialise_database(db_path: PathLike) -> None:
    """Create database tables if they don't exist."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    _reset_database_if_requested(db_path)
    conn = get_connection(db_path)
    try:
        # WAL lets status reads proceed while a firing job holds the write lock
        conn.execute("PRAGMA journal_mode=WAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                owner_id TEXT PRIMARY KEY,
                balance_cents INTEGER NOT NULL DEFAULT 0,
                teacher TEXT,
                created_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                owner_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                job_id TEXT NOT NULL,
                name TEXT,
                category TEXT,
                amount_cents INTEGER NOT NULL,
                frequency TEXT NOT NULL,
                anchor_day INTEGER,
                quick_time INTEGER NOT NULL DEFAULT 0,
                start_time TEXT NOT NULL,
                next_execution TEXT NOT NULL,
                active INTEGER NOT NULL DEFAULT 1,
                skipped_occurrences INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                PRIMARY KEY (owner_id, kind, job_id)
            )
        """)

        # One row per applied occurrence; the unique key is the replay guard
        conn.execute("""
            CREATE TABLE IF NOT EXISTS transaction_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                owner_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                job_id TEXT NOT NULL,
                name TEXT,
                category TEXT,
                amount_cents INTEGER NOT NULL,
                occurrence_time TEXT NOT NULL,
                applied_at TEXT NOT NULL,
                catchup INTEGER NOT NULL DEFAULT 0,
                UNIQUE (owner_id, kind, job_id, occurrence_time)
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS server_status (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event TEXT NOT NULL,
                recorded_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS lesson_timers (
                student_id TEXT NOT NULL,
                lesson_id TEXT NOT NULL,
                elapsed_time REAL NOT NULL,
                last_updated TEXT NOT NULL,
                PRIMARY KEY (student_id, lesson_id)
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_active_next ON jobs (active, next_execution)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_records_catchup ON transaction_records (catchup, occurrence_time)"
        )
    finally:
        conn.close()
