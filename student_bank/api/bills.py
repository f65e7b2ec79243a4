import logging

import pydantic
from fastapi import APIRouter, Depends, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .. import schemas
from ..errors import AccountNotFound, ValidationError
from ..models import KINDS, JobKey
from ..runtime import SchedulerRuntime
from .deps import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bills"])


@router.post("/bills", response_model=schemas.JobSummary)
async def api_create_bill(
    payload: schemas.BillParcel,
    runtime: SchedulerRuntime = Depends(get_runtime),
) -> schemas.JobSummary:
    """Create a recurring bill or payment and arm its timer."""
    try:
        req = schemas.JobCreate.from_parcel(payload.parcel)
    except pydantic.ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    try:
        job = await run_in_threadpool(
            runtime.store.create_job,
            req.owner_id,
            req.kind,
            req.amount,
            req.interval,
            req.name,
            req.category,
            req.start_time,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except AccountNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    runtime.scheduler.register(job)
    return schemas.JobSummary(**job.to_dict())


@router.delete("/bills/{owner_id}/{kind}/{job_id}")
async def api_delete_bill(
    owner_id: str,
    kind: str,
    job_id: str,
    runtime: SchedulerRuntime = Depends(get_runtime),
) -> JSONResponse:
    """Cancel a recurring bill or payment."""
    if kind not in KINDS:
        raise HTTPException(status_code=404, detail="Job not found")
    key = JobKey(owner_id, kind, job_id)
    job = await run_in_threadpool(runtime.store.get_job, key)
    if job is None or not job.active:
        raise HTTPException(status_code=404, detail="Job not found")
    await run_in_threadpool(runtime.store.deactivate, key)
    runtime.scheduler.deactivate(key)
    return JSONResponse(content={"deleted": True, "key": str(key)})
