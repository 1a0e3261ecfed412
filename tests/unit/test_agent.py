"""Tests for agent startup helpers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from lattice_agent.agent import host_capabilities, register_with_backoff
from lattice_agent.utils.exceptions import ControlPlaneUnreachableError


@pytest.fixture
def context(settings, metrics):
    """Context with a mocked runtime adapter and control plane."""
    context = MagicMock()
    context.settings = settings
    context.metrics = metrics
    context.container_manager.runtime_version = AsyncMock(return_value="24.0.7")
    context.control_plane.register = AsyncMock()
    return context


def test_host_capabilities():
    """Test the advertised capacity payload."""
    capabilities = host_capabilities()

    assert capabilities["cpuCores"] >= 1
    assert capabilities["totalMemory"] > 0
    assert capabilities["totalDisk"] > 0
    assert capabilities["serviceTypes"] == ["postgres", "redis", "minio", "http-app", "custom"]


@pytest.mark.asyncio
async def test_register_first_try(context):
    """Test that a successful registration returns immediately."""
    assert await register_with_backoff(context, asyncio.Event()) is True

    kwargs = context.control_plane.register.await_args.kwargs
    assert kwargs["runtime_version"] == "24.0.7"
    assert "serviceTypes" in kwargs["capabilities"]


@pytest.mark.asyncio
async def test_register_retries_until_success(context, metrics):
    """Test that failed attempts are retried with backoff."""
    context.control_plane.register.side_effect = [
        ControlPlaneUnreachableError("register"),
        ControlPlaneUnreachableError("register"),
        None,
    ]

    registered = await register_with_backoff(
        context, asyncio.Event(), initial_delay_s=0.01, max_delay_s=0.02
    )

    assert registered is True
    assert context.control_plane.register.await_count == 3
    output = metrics.get_metrics().decode("utf-8")
    assert 'operation="register"' in output


@pytest.mark.asyncio
async def test_register_gives_up_on_stop(context):
    """Test that a stop request ends the retry loop."""
    context.control_plane.register.side_effect = ControlPlaneUnreachableError("register")
    stop_event = asyncio.Event()

    async def stop_soon():
        await asyncio.sleep(0.05)
        stop_event.set()

    stopper = asyncio.create_task(stop_soon())
    registered = await asyncio.wait_for(
        register_with_backoff(context, stop_event, initial_delay_s=10), timeout=2
    )
    await stopper

    assert registered is False
    assert context.control_plane.register.await_count == 1
