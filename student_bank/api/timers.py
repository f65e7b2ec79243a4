import logging
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from .. import schemas
from ..db import get_db_conn
from ..intervals import to_iso, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/timers", tags=["timers"])


@router.post("")
def api_save_timer(
    payload: schemas.TimerSave,
    db_conn: sqlite3.Connection = Depends(get_db_conn),
) -> JSONResponse:
    """Upsert the elapsed time of a lesson for a student."""
    if not payload.studentId or not payload.lessonId or payload.elapsedTime is None:
        raise HTTPException(status_code=400, detail="Missing required fields")
    db_conn.execute(
        "INSERT INTO lesson_timers (student_id, lesson_id, elapsed_time, last_updated) VALUES (?, ?, ?, ?) "
        "ON CONFLICT (student_id, lesson_id) DO UPDATE SET elapsed_time = excluded.elapsed_time, "
        "last_updated = excluded.last_updated",
        (payload.studentId, payload.lessonId, payload.elapsedTime, to_iso(utcnow())),
    )
    logger.info(
        "Timer saved for student %s, lesson %s: %s seconds",
        payload.studentId,
        payload.lessonId,
        payload.elapsedTime,
    )
    return JSONResponse(content={"success": True, "message": "Timer saved"})


@router.get("", response_model=schemas.TimerValue)
def api_get_timer(
    studentId: str = "",
    lessonId: str = "",
    db_conn: sqlite3.Connection = Depends(get_db_conn),
) -> schemas.TimerValue:
    if not studentId or not lessonId:
        raise HTTPException(status_code=400, detail="Missing studentId or lessonId")
    row = db_conn.execute(
        "SELECT elapsed_time FROM lesson_timers WHERE student_id = ? AND lesson_id = ?",
        (studentId, lessonId),
    ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Timer not found")
    return schemas.TimerValue(elapsedTime=row["elapsed_time"])
