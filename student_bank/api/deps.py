from fastapi import Request

from ..runtime import SchedulerRuntime


def get_runtime(request: Request) -> SchedulerRuntime:
    """The runtime owned by the app; injected with Depends."""
    return request.app.state.runtime
