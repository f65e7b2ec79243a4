from .jobs import (
    BillParcel,
    JobCreate,
    JobSummary,
)

from .timers import (
    TimerSave,
    TimerValue,
)
