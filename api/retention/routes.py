"""
Routes/endpoints for the Retention API

HTTP   URI                                 Action
----   ---                                 ------
POST   /api/v1/retention/run               Run a retention sweep now
GET    /api/v1/retention/status            Scheduler state and last sweep result
"""

from fastapi import APIRouter, status

from api.retention.models import SchedulerStatus, SweepResult
from core.deps import SchedulerDep

router = APIRouter(prefix="/retention", tags=["Retention Endpoints"])


@router.post(
    "/run",
    response_model=SweepResult,
    status_code=status.HTTP_200_OK,
    tags=["Retention Endpoints"],
)
def run_retention_sweep(scheduler: SchedulerDep) -> SweepResult:
    """
    Delete files older than the retention window now.

    If a sweep is already running, nothing is done and skipped is true.
    """
    return scheduler.run_once()


@router.get(
    "/status",
    response_model=SchedulerStatus,
    status_code=status.HTTP_200_OK,
    tags=["Retention Endpoints"],
)
def get_retention_status(scheduler: SchedulerDep) -> SchedulerStatus:
    """
    Report whether the scheduler is running and the last sweep result.
    """
    return scheduler.status()
