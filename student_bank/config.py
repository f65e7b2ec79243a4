from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _project_root() -> Path:
    # student_bank/config.py -> student_bank -> project root
    return Path(__file__).resolve().parents[1]


PROJECT_ROOT: Path = _project_root()

# Data directory (SQLite DB); override with DATA_DIR, or point BANK_DB_PATH at a
# copy to run against scratch data
DATA_DIR: Path = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
DB_PATH: Path = Path(os.getenv("BANK_DB_PATH", str(DATA_DIR / "bank.db")))
LOG_DIR: Path = Path(os.getenv("LOG_DIR", str(PROJECT_ROOT / "logs")))

# Transient storage failures (locked database, disk I/O) are retried this many
# times with exponential backoff before StorageUnavailable is raised
STORAGE_RETRY_ATTEMPTS: int = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_MAX_WAIT: float = float(os.getenv("STORAGE_RETRY_MAX_WAIT", "4"))
SQLITE_BUSY_TIMEOUT: float = float(os.getenv("SQLITE_BUSY_TIMEOUT", "10"))


def _env_flag(name: str, default: str) -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime knobs for the recurring-transaction scheduler."""

    db_path: Path = DB_PATH
    log_dir: Optional[Path] = LOG_DIR
    # Occurrences backfilled per job per recovery pass; the rest are collapsed
    catchup_cap: int = 12
    max_retries: int = 5
    retry_base_seconds: float = 30.0
    retry_max_seconds: float = 3600.0
    max_concurrent_jobs: int = 8
    apply_timeout_seconds: float = 30.0
    sweep_minutes: int = 15
    lesson_engine_url: Optional[str] = None
    autostart: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        log_dir = os.getenv("LOG_DIR", str(LOG_DIR))
        return cls(
            db_path=DB_PATH,
            log_dir=Path(log_dir) if log_dir else None,
            catchup_cap=int(os.getenv("SCHEDULER_CATCHUP_CAP", "12")),
            max_retries=int(os.getenv("SCHEDULER_MAX_RETRIES", "5")),
            retry_base_seconds=float(os.getenv("SCHEDULER_RETRY_BASE_SECONDS", "30")),
            retry_max_seconds=float(os.getenv("SCHEDULER_RETRY_MAX_SECONDS", "3600")),
            max_concurrent_jobs=int(os.getenv("SCHEDULER_MAX_CONCURRENT_JOBS", "8")),
            apply_timeout_seconds=float(os.getenv("SCHEDULER_APPLY_TIMEOUT_SECONDS", "30")),
            sweep_minutes=int(os.getenv("SCHEDULER_SWEEP_MINUTES", "15")),
            lesson_engine_url=os.getenv("LESSON_ENGINE_URL") or None,
            autostart=_env_flag("SCHEDULER_AUTOSTART", "1"),
        )
