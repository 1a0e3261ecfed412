"""Cron-style scheduled task runner."""

import asyncio
import heapq
import itertools
import os
import signal
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from lattice_agent.models.tasks import ScheduledTask, TaskExecution, TaskStatus
from lattice_agent.models.workloads import CronJobSpec
from lattice_agent.utils import get_logger
from lattice_agent.utils.cron import validate_schedule
from lattice_agent.utils.exceptions import TaskNotFoundError
from lattice_agent.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

# Captured output kept per stream, from the tail
MAX_OUTPUT_CHARS = 64 * 1024

HeapEntry = Tuple[datetime, int, str, int]


def _now() -> datetime:
    return datetime.now(timezone.utc)


# How long to wait for pipes to close once a timed-out command is killed
KILL_GRACE_S = 2.0


def _tail(data: bytes) -> str:
    text = data.decode("utf-8", errors="replace")
    return text[-MAX_OUTPUT_CHARS:]


async def _read_stream(stream: asyncio.StreamReader, buffer: bytearray) -> None:
    """Append everything read from ``stream`` until EOF, keeping only the tail."""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        buffer.extend(chunk)
        # Bytes, not chars, but four bytes per char is the UTF-8 worst case
        if len(buffer) > MAX_OUTPUT_CHARS * 4:
            del buffer[: len(buffer) - MAX_OUTPUT_CHARS * 4]


class TaskRunner:
    """
    Runs workload commands on cron schedules.

    A single scheduler coroutine sleeps until the earliest entry of a heap of
    ``(next_fire, seq, task_id, generation)`` tuples. Every schedule or status
    change bumps the task's generation and pushes a fresh entry, so stale
    entries are simply dropped when they surface. Mutations set an event that
    wakes the scheduler to recompute its sleep.
    """

    def __init__(
        self,
        default_timeout_s: float = 300.0,
        history_limit: int = 100,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """
        Initialize task runner.

        Args:
            default_timeout_s: Timeout for jobs that specify none
            history_limit: Executions kept per task, oldest evicted first
            metrics: Optional metrics collector
        """
        self.default_timeout_s = default_timeout_s
        self.history_limit = history_limit
        self.metrics = metrics

        self._tasks: Dict[str, ScheduledTask] = {}
        self._heap: List[HeapEntry] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._scheduler: Optional[asyncio.Task] = None
        self._running: Dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._scheduler is not None and not self._scheduler.done():
            return
        self._scheduler = asyncio.create_task(self._run_loop())
        logger.info("Task runner started", extra={"tasks": len(self._tasks)})

    async def shutdown(self) -> None:
        """Stop scheduling and kill any executions still in flight."""
        if self._scheduler is not None:
            self._scheduler.cancel()
            try:
                await self._scheduler
            except asyncio.CancelledError:
                pass
            self._scheduler = None

        running = list(self._running.values())
        for execution in running:
            execution.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        logger.info("Task runner stopped", extra={"cancelled_runs": len(running)})

    async def deploy(self, workload_id: str, job: CronJobSpec) -> ScheduledTask:
        """
        Register a scheduled job for a workload.

        Args:
            workload_id: Owning workload
            job: Job definition

        Returns:
            The scheduled task

        Raises:
            InvalidScheduleError: If the cron expression is invalid
        """
        cron = validate_schedule(job.schedule)

        task = ScheduledTask(
            id=f"task_{uuid4()}",
            workload_id=workload_id,
            name=job.name,
            cron=cron,
            command=job.command,
            env=dict(job.env),
            timeout_s=job.timeout_s or self.default_timeout_s,
            history=deque(maxlen=self.history_limit),
        )
        self._tasks[task.id] = task
        self._schedule(task)

        logger.info(
            "Scheduled task deployed",
            extra={
                "task_id": task.id,
                "workload_id": workload_id,
                "schedule": task.schedule,
                "next_run": task.next_run.isoformat() if task.next_run else None,
            },
        )
        return task

    async def pause(self, task_id: str) -> ScheduledTask:
        task = self._require(task_id)
        task.status = TaskStatus.PAUSED
        task.generation += 1
        task.next_run = None
        self._wakeup.set()
        logger.info("Scheduled task paused", extra={"task_id": task_id})
        return task

    async def resume(self, task_id: str) -> ScheduledTask:
        task = self._require(task_id)
        task.status = TaskStatus.ACTIVE
        self._schedule(task)
        logger.info("Scheduled task resumed", extra={"task_id": task_id})
        return task

    async def update(
        self,
        task_id: str,
        schedule: str | None = None,
        command: str | None = None,
        env: Dict[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> ScheduledTask:
        """
        Change a task's definition in place, keeping its active/paused status.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidScheduleError: If the new schedule is invalid (task unchanged)
        """
        task = self._require(task_id)
        cron = validate_schedule(schedule) if schedule is not None else None

        if cron is not None:
            task.cron = cron
        if command is not None:
            task.command = command
        if env is not None:
            task.env = dict(env)
        if timeout_s is not None:
            task.timeout_s = timeout_s

        if task.status is TaskStatus.ACTIVE:
            self._schedule(task)
        else:
            task.generation += 1

        logger.info("Scheduled task updated", extra={"task_id": task_id, "schedule": task.schedule})
        return task

    async def remove(self, workload_id: str) -> int:
        """
        Remove every task owned by a workload, killing in-flight runs.

        Returns:
            Number of tasks removed
        """
        task_ids = [t.id for t in self._tasks.values() if t.workload_id == workload_id]
        cancelled = []
        for task_id in task_ids:
            task = self._tasks.pop(task_id)
            task.status = TaskStatus.DISABLED
            task.generation += 1
            execution = self._running.get(task_id)
            if execution is not None:
                execution.cancel()
                cancelled.append(execution)

        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        if task_ids:
            self._wakeup.set()
            logger.info("Scheduled tasks removed", extra={"workload_id": workload_id, "count": len(task_ids)})
        return len(task_ids)

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def list_tasks(self, workload_id: str | None = None) -> List[ScheduledTask]:
        tasks = list(self._tasks.values())
        if workload_id is not None:
            tasks = [t for t in tasks if t.workload_id == workload_id]
        return tasks

    def list_executions(self, task_id: str, limit: int | None = None) -> List[TaskExecution]:
        """
        Execution history of a task, most recent first.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = self._require(task_id)
        executions = list(reversed(task.history))
        if limit is not None:
            executions = executions[:limit]
        return executions

    async def run_once(self, task_id: str) -> TaskExecution:
        """Run a task immediately and record the execution."""
        task = self._require(task_id)
        execution = await self._execute(task)

        task.last_run = execution.started_at
        task.history.append(execution)

        if execution.timed_out:
            outcome = "timeout"
        else:
            outcome = "success" if execution.success else "failure"
        if self.metrics:
            self.metrics.record_task_run(outcome)

        logger.info(
            "Scheduled task finished",
            extra={
                "task_id": task.id,
                "workload_id": task.workload_id,
                "exit_code": execution.exit_code,
                "outcome": outcome,
                "duration_s": execution.duration_s,
            },
        )
        return execution

    def _require(self, task_id: str) -> ScheduledTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def _schedule(self, task: ScheduledTask, after: datetime | None = None) -> None:
        task.generation += 1
        task.next_run = task.cron.next_fire_time(after or _now())
        heapq.heappush(self._heap, (task.next_run, next(self._seq), task.id, task.generation))
        self._wakeup.set()

    async def _run_loop(self) -> None:
        while True:
            self._wakeup.clear()
            now = _now()

            while self._heap and self._heap[0][0] <= now:
                fire_at, _, task_id, generation = heapq.heappop(self._heap)
                task = self._tasks.get(task_id)
                if task is None or task.generation != generation or task.status is not TaskStatus.ACTIVE:
                    continue
                self._fire(task)
                self._schedule(task, after=max(now, fire_at))

            delay = (self._heap[0][0] - _now()).total_seconds() if self._heap else None
            if delay is not None and delay <= 0:
                continue
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    def _fire(self, task: ScheduledTask) -> None:
        previous = self._running.get(task.id)
        if previous is not None and not previous.done():
            logger.warning(
                "Skipping fire, previous run still in progress",
                extra={"task_id": task.id, "workload_id": task.workload_id},
            )
            if self.metrics:
                self.metrics.record_task_run("skipped")
            return

        execution = asyncio.create_task(self.run_once(task.id))
        self._running[task.id] = execution
        execution.add_done_callback(lambda _t, task_id=task.id: self._forget_run(task_id, _t))

    def _forget_run(self, task_id: str, execution: asyncio.Task) -> None:
        if self._running.get(task_id) is execution:
            del self._running[task_id]
        if not execution.cancelled() and execution.exception() is not None:
            logger.error(
                "Scheduled task run crashed",
                extra={"task_id": task_id, "error": str(execution.exception())},
            )

    async def _execute(self, task: ScheduledTask) -> TaskExecution:
        execution = TaskExecution(task_id=task.id, started_at=_now())
        env = {**os.environ, **task.env}

        try:
            process = await asyncio.create_subprocess_shell(
                task.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            execution.finished_at = _now()
            execution.stderr = f"failed to start command: {e}"
            return execution

        stdout, stderr = bytearray(), bytearray()
        collect = asyncio.gather(
            _read_stream(process.stdout, stdout),
            _read_stream(process.stderr, stderr),
            process.wait(),
        )
        try:
            await asyncio.wait_for(asyncio.shield(collect), timeout=task.timeout_s)
        except asyncio.TimeoutError:
            self._kill(process)
            execution.timed_out = True
            logger.warning("Scheduled task timed out", extra={"task_id": task.id, "timeout_s": task.timeout_s})
            try:
                await asyncio.wait_for(collect, timeout=KILL_GRACE_S)
            except asyncio.TimeoutError:
                logger.warning("Output pipes still open after kill", extra={"task_id": task.id})
        finally:
            if process.returncode is None:
                # Cancelled mid-run
                self._kill(process)
            collect.cancel()

        execution.stdout = _tail(bytes(stdout))
        execution.stderr = _tail(bytes(stderr))
        if execution.timed_out:
            note = f"timed out after {task.timeout_s:g} seconds"
            execution.stderr = f"{execution.stderr.rstrip()}\n{note}" if execution.stderr else note

        execution.finished_at = _now()
        execution.exit_code = process.returncode
        execution.success = not execution.timed_out and process.returncode == 0
        return execution

    @staticmethod
    def _kill(process: asyncio.subprocess.Process) -> None:
        # The command runs in its own session; kill the whole group so shell children die too
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
