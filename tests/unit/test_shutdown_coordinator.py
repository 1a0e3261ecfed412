"""Tests for ShutdownCoordinator."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lattice_agent.managers.shutdown_coordinator import ShutdownCoordinator


@pytest.fixture
def context():
    """Agent context whose components record the order they are stopped in."""
    calls = []
    context = MagicMock()

    def recorder(name):
        return lambda *args, **kwargs: calls.append(name)

    context.reconciler.shutdown = AsyncMock(side_effect=recorder("reconciler"))
    context.tunnel_manager.close_all = AsyncMock(side_effect=recorder("tunnels"))
    context.container_manager.close = MagicMock(side_effect=recorder("runtime"))
    context.task_runner.shutdown = AsyncMock(side_effect=recorder("task_runner"))
    context.control_plane.close = AsyncMock(side_effect=recorder("control_plane"))
    context.calls = calls
    return context


@pytest.mark.asyncio
async def test_shutdown_sets_flag(context):
    """Test that shutdown sets the shutdown flag."""
    coordinator = ShutdownCoordinator(context)

    assert not coordinator.is_shutting_down()

    await coordinator.initiate_shutdown()

    assert coordinator.is_shutting_down()


@pytest.mark.asyncio
async def test_shutdown_order(context):
    """Test that components stop reconciler first and control plane last."""
    coordinator = ShutdownCoordinator(context)

    await coordinator.initiate_shutdown()

    assert context.calls == ["reconciler", "tunnels", "runtime", "task_runner", "control_plane"]


@pytest.mark.asyncio
async def test_failed_step_does_not_stop_sequence(context):
    """Test that a failing step is logged and later steps still run."""
    context.reconciler.shutdown.side_effect = RuntimeError("teardown exploded")
    context.container_manager.close.side_effect = OSError("socket gone")
    coordinator = ShutdownCoordinator(context)

    await coordinator.initiate_shutdown()

    context.tunnel_manager.close_all.assert_awaited_once()
    context.task_runner.shutdown.assert_awaited_once()
    context.control_plane.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_shutdown_runs_once(context):
    """Test that a second shutdown request is ignored."""
    coordinator = ShutdownCoordinator(context)

    await coordinator.initiate_shutdown()
    await coordinator.initiate_shutdown()

    context.reconciler.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_wait_for_shutdown(context):
    """Test that waiters are released once shutdown completes."""
    coordinator = ShutdownCoordinator(context)

    await coordinator.initiate_shutdown()
    await coordinator.wait_for_shutdown()
