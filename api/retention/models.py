"""
Models for the Retention API
"""

from datetime import datetime
from enum import Enum
from sqlmodel import SQLModel


class SchedulerState(str, Enum):
    """Retention scheduler states"""

    IDLE = "idle"
    RUNNING = "running"


class SweepResult(SQLModel):
    """Outcome of one retention sweep"""

    cutoff: datetime | None = None
    candidates: int = 0
    deleted: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None


class SchedulerStatus(SQLModel):
    """Current state of the retention scheduler"""

    state: SchedulerState
    started: bool
    retention_days: int
    interval_seconds: int
    last_result: SweepResult | None = None
