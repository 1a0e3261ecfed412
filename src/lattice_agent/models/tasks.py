"""Scheduled task (cron job) models."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, Optional

from lattice_agent.utils.cron import CronExpression


class TaskStatus(str, Enum):
    """Scheduling state of a task."""

    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


@dataclass
class TaskExecution:
    """One run of a scheduled task."""

    task_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    success: bool = False
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def duration_s(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ScheduledTask:
    """A command run on a cron schedule on behalf of a workload."""

    id: str
    workload_id: str
    name: str
    cron: CronExpression
    command: str
    env: Dict[str, str]
    timeout_s: float
    status: TaskStatus = TaskStatus.ACTIVE
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    history: Deque[TaskExecution] = field(default_factory=deque, repr=False)
    # Bumped on every schedule/status change; stale heap entries carry an older value
    generation: int = 0

    @property
    def schedule(self) -> str:
        return self.cron.expression
