from typing import Optional

from pydantic import BaseModel


class TimerSave(BaseModel):
    studentId: Optional[str] = None
    lessonId: Optional[str] = None
    elapsedTime: Optional[float] = None


class TimerValue(BaseModel):
    elapsedTime: float
