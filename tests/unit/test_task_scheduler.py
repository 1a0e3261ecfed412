"""Tests for TaskRunner."""

import asyncio

import pytest

from lattice_agent.managers.task_scheduler import TaskRunner
from lattice_agent.models.tasks import TaskStatus
from lattice_agent.models.workloads import CronJobSpec
from lattice_agent.utils.exceptions import InvalidScheduleError, TaskNotFoundError


@pytest.fixture
async def runner(metrics):
    """Task runner that is always shut down after the test."""
    runner = TaskRunner(default_timeout_s=10, history_limit=100, metrics=metrics)
    yield runner
    await runner.shutdown()


def job(command="true", schedule="0 * * * *", **kwargs):
    return CronJobSpec(schedule=schedule, command=command, **kwargs)


@pytest.mark.asyncio
async def test_deploy_rejects_invalid_schedule(runner):
    """Test that a bad schedule fails at deploy time and registers nothing."""
    with pytest.raises(InvalidScheduleError):
        await runner.deploy("wl-1", job(schedule="61 * * * *"))

    assert runner.list_tasks() == []


@pytest.mark.asyncio
async def test_deploy_schedules_next_run(runner):
    """Test a deployed task is active with an exact next run."""
    task = await runner.deploy("wl-1", job(schedule="0 * * * *"))

    assert task.status is TaskStatus.ACTIVE
    assert task.workload_id == "wl-1"
    assert task.timeout_s == 10
    assert task.next_run is not None
    assert task.next_run.minute == 0 and task.next_run.second == 0
    assert runner.get(task.id) is task


@pytest.mark.asyncio
async def test_run_captures_output_and_env(runner):
    """Test stdout, stderr and merged environment."""
    task = await runner.deploy(
        "wl-1", job(command='echo "$GREETING"; echo oops >&2', env={"GREETING": "hello"})
    )

    execution = await runner.run_once(task.id)

    assert execution.success is True
    assert execution.exit_code == 0
    assert execution.stdout == "hello\n"
    assert execution.stderr == "oops\n"
    assert execution.finished_at >= execution.started_at
    assert task.last_run == execution.started_at


@pytest.mark.asyncio
async def test_run_failure_exit_code(runner):
    """Test a non-zero exit is recorded as failure."""
    task = await runner.deploy("wl-1", job(command="exit 3"))

    execution = await runner.run_once(task.id)

    assert execution.success is False
    assert execution.exit_code == 3
    assert execution.timed_out is False


@pytest.mark.asyncio
async def test_run_timeout_kills_command(runner):
    """Test the hard timeout terminates the command."""
    task = await runner.deploy("wl-1", job(command="sleep 5", timeout_s=0.2))

    execution = await asyncio.wait_for(runner.run_once(task.id), timeout=3)

    assert execution.timed_out is True
    assert execution.success is False
    assert "timed out" in execution.stderr


@pytest.mark.asyncio
async def test_run_timeout_keeps_partial_output(runner):
    """Test output written before the kill is kept in the history entry."""
    task = await runner.deploy(
        "wl-1", job(command="echo started; echo warming >&2; sleep 5", timeout_s=0.5)
    )

    execution = await asyncio.wait_for(runner.run_once(task.id), timeout=5)

    assert execution.timed_out is True
    assert execution.stdout == "started\n"
    assert execution.stderr.startswith("warming\n")
    assert execution.stderr.endswith("timed out after 0.5 seconds")
    assert runner.list_executions(task.id)[0].stdout == "started\n"


@pytest.mark.asyncio
async def test_list_executions_most_recent_first(runner):
    """Test history order and limit."""
    task = await runner.deploy("wl-1", job(command='echo "$N"'))
    for n in range(3):
        await runner.update(task.id, env={"N": str(n)})
        await runner.run_once(task.id)

    executions = runner.list_executions(task.id)
    assert [e.stdout for e in executions] == ["2\n", "1\n", "0\n"]
    assert len(runner.list_executions(task.id, limit=2)) == 2


@pytest.mark.asyncio
async def test_history_is_bounded(metrics):
    """Test that old executions are evicted first."""
    runner = TaskRunner(history_limit=3, metrics=metrics)
    task = await runner.deploy("wl-1", job(command='echo "$N"'))

    for n in range(5):
        await runner.update(task.id, env={"N": str(n)})
        await runner.run_once(task.id)

    executions = runner.list_executions(task.id)
    assert [e.stdout for e in executions] == ["4\n", "3\n", "2\n"]


@pytest.mark.asyncio
async def test_pause_resume_and_update_keep_status(runner):
    """Test that updating a paused task's schedule leaves it paused."""
    task = await runner.deploy("wl-1", job(schedule="0 * * * *"))

    await runner.pause(task.id)
    assert task.status is TaskStatus.PAUSED
    assert task.next_run is None

    await runner.update(task.id, schedule="*/5 * * * *")
    assert task.status is TaskStatus.PAUSED
    assert task.schedule == "*/5 * * * *"

    await runner.resume(task.id)
    assert task.status is TaskStatus.ACTIVE
    assert task.next_run.minute % 5 == 0


@pytest.mark.asyncio
async def test_update_with_invalid_schedule_changes_nothing(runner):
    """Test an invalid update is rejected without touching the task."""
    task = await runner.deploy("wl-1", job(schedule="0 * * * *", command="true"))

    with pytest.raises(InvalidScheduleError):
        await runner.update(task.id, schedule="nope", command="false")

    assert task.schedule == "0 * * * *"
    assert task.command == "true"


@pytest.mark.asyncio
async def test_remove_by_workload(runner):
    """Test remove drops every task of one workload only."""
    await runner.deploy("wl-1", job())
    await runner.deploy("wl-1", job(name="second"))
    other = await runner.deploy("wl-2", job())

    assert await runner.remove("wl-1") == 2
    assert runner.list_tasks() == [other]
    assert runner.list_tasks("wl-1") == []
    assert await runner.remove("wl-1") == 0


@pytest.mark.asyncio
async def test_unknown_task(runner):
    """Test operations on unknown task ids."""
    with pytest.raises(TaskNotFoundError):
        await runner.pause("task_missing")
    with pytest.raises(TaskNotFoundError):
        runner.list_executions("task_missing")
    assert runner.get("task_missing") is None


@pytest.mark.asyncio
async def test_scheduler_fires_on_schedule(runner):
    """Test that the scheduler loop runs a per-second task."""
    task = await runner.deploy("wl-1", job(schedule="* * * * * *", command="echo tick"))
    await runner.start()

    for _ in range(40):
        if task.history:
            break
        await asyncio.sleep(0.1)

    assert task.history
    assert task.history[-1].stdout == "tick\n"


@pytest.mark.asyncio
async def test_paused_task_does_not_fire(runner):
    """Test that a paused per-second task stays idle."""
    task = await runner.deploy("wl-1", job(schedule="* * * * * *"))
    await runner.pause(task.id)
    await runner.start()

    await asyncio.sleep(1.5)

    assert not task.history


@pytest.mark.asyncio
async def test_overlapping_fire_is_skipped(runner, metrics):
    """Test that a fire is skipped while the previous run is in progress."""
    task = await runner.deploy("wl-1", job())
    in_progress = asyncio.get_running_loop().create_future()
    runner._running[task.id] = in_progress

    runner._fire(task)

    assert runner._running[task.id] is in_progress
    assert 'outcome="skipped"' in metrics.get_metrics().decode("utf-8")
    in_progress.cancel()
