import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.bills import router as bills_router
from .api.scheduler import router as scheduler_router
from .api.timers import router as timers_router
from .config import Settings
from .errors import StorageUnavailable
from .runtime import SchedulerRuntime
from .services.logging_service import configure_logging

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, runtime: Optional[SchedulerRuntime] = None) -> FastAPI:
    if runtime is None:
        runtime = SchedulerRuntime(settings or Settings.from_env())
    settings = runtime.settings

    if settings.log_dir is not None:
        configure_logging(settings.log_dir)

    app = FastAPI(title="Student Bank Scheduler", version="0.3.0")
    app.state.runtime = runtime

    app.include_router(scheduler_router)
    app.include_router(bills_router)
    app.include_router(timers_router)

    @app.exception_handler(StorageUnavailable)
    async def _storage_unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
        logger.error("Storage unavailable during %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable, try again shortly"})

    @app.get("/health")
    async def health():
        return {"status": "ok", "scheduler": runtime.scheduler.running}

    # --- lifecycle: init DB, catch up and start/stop timers ---
    @app.on_event("startup")
    def _on_startup() -> None:
        try:
            runtime.init()
        except Exception:
            logger.exception("Scheduler runtime failed to start")
            raise

    @app.on_event("shutdown")
    def _on_shutdown() -> None:
        try:
            runtime.shutdown()
        except Exception:
            logger.exception("Scheduler runtime shutdown error")

    return app


def run() -> None:
    import uvicorn

    uvicorn.run(
        "student_bank.main:create_app",
        factory=True,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3000")),
    )


if __name__ == "__main__":
    run()
