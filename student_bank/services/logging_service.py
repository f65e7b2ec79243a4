from __future__ import annotations

import logging
import sys
from pathlib import Path

SCHEDULER_LOGGERS = (
    "student_bank.scheduler",
    "student_bank.recovery",
    "student_bank.applier",
    "student_bank.jobstore",
    "student_bank.services.cron_service",
    "apscheduler",
)


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    return any(
        getattr(h, "baseFilename", None) == str(path)
        for h in logger.handlers
        if isinstance(h, logging.FileHandler)
    )


def configure_logging(log_dir: Path) -> None:
    """Configure application logging (file + console) and attach to uvicorn loggers.

    Idempotent: safe to call multiple times.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    server_log_path = log_dir / "server.log"
    scheduler_log_path = log_dir / "scheduler.log"

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    formatter = logging.Formatter(fmt)

    # Scheduler log carries thread names; firings run on pool threads
    scheduler_fmt = "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s"
    scheduler_formatter = logging.Formatter(scheduler_fmt)

    server_handler = logging.FileHandler(str(server_log_path))
    server_handler.setLevel(logging.DEBUG)
    server_handler.setFormatter(formatter)

    scheduler_handler = logging.FileHandler(str(scheduler_log_path))
    scheduler_handler.setLevel(logging.DEBUG)
    scheduler_handler.setFormatter(scheduler_formatter)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if not _has_file_handler(root_logger, server_log_path):
        root_logger.addHandler(server_handler)

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        root_logger.addHandler(stream_handler)

    for name in SCHEDULER_LOGGERS:
        lg = logging.getLogger(name)
        lg.setLevel(logging.DEBUG)
        if not _has_file_handler(lg, scheduler_log_path):
            lg.addHandler(scheduler_handler)

    # APScheduler logs every executed job at INFO; keep that out of the console
    logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)

    for uv_logger_name in ("uvicorn.error", "uvicorn.access", "uvicorn"):
        lg = logging.getLogger(uv_logger_name)
        lg.setLevel(logging.DEBUG)
        if not _has_file_handler(lg, server_log_path):
            lg.addHandler(server_handler)
