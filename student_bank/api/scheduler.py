from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.concurrency import run_in_threadpool

from .deps import get_runtime
from ..runtime import SchedulerRuntime

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.get("/status")
async def api_scheduler_status(runtime: SchedulerRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    """Jobs currently armed in the live registry."""
    return runtime.reporter.get_status()


@router.get("/user/{name}")
async def api_scheduler_user(name: str, runtime: SchedulerRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    """Bills and payments for one account holder."""
    jobs = await run_in_threadpool(runtime.reporter.get_user_jobs, name)
    if jobs is None:
        raise HTTPException(status_code=404, detail="User not found")
    return jobs


@router.post("/catchup")
async def api_manual_catchup(runtime: SchedulerRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    """Run the catch-up scan once, on demand."""
    summary = await run_in_threadpool(runtime.recovery.scan)
    return {"success": True, **summary.to_dict()}


@router.get("/catchup/stats")
async def api_catchup_stats(
    days: int = Query(7, ge=1, le=365),
    runtime: SchedulerRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    return await run_in_threadpool(runtime.recovery.catchup_stats, days)
