"""Lattice agent entry point."""

import asyncio
import platform
import signal
import socket
import sys

import psutil

from lattice_agent.config import Settings, get_settings
from lattice_agent.context import AgentContext
from lattice_agent.managers.shutdown_coordinator import ShutdownCoordinator
from lattice_agent.models.workloads import ServiceType
from lattice_agent.utils import get_logger, setup_logging
from lattice_agent.utils.exceptions import ControlPlaneError, RuntimeUnavailableError

logger = get_logger(__name__)

REGISTER_BACKOFF_INITIAL_S = 1.0
REGISTER_BACKOFF_MAX_S = 60.0


def host_capabilities() -> dict:
    """Capacity advertised to the control plane at registration."""
    return {
        "cpuCores": psutil.cpu_count() or 1,
        "totalMemory": psutil.virtual_memory().total,
        "totalDisk": psutil.disk_usage("/").total,
        "serviceTypes": [t.value for t in ServiceType],
    }


async def register_with_backoff(
    context: AgentContext,
    stop_event: asyncio.Event,
    initial_delay_s: float = REGISTER_BACKOFF_INITIAL_S,
    max_delay_s: float = REGISTER_BACKOFF_MAX_S,
) -> bool:
    """
    Register with the control plane, retrying with capped exponential backoff.

    Returns:
        True once registered, False if a stop was requested first
    """
    hostname = context.settings.agent_hostname or socket.gethostname()
    runtime_version = await context.container_manager.runtime_version()
    delay = initial_delay_s
    attempt = 0

    while not stop_event.is_set():
        attempt += 1
        try:
            await context.control_plane.register(
                hostname=hostname,
                platform=sys.platform,
                runtime_version=runtime_version,
                capabilities=host_capabilities(),
            )
            return True
        except ControlPlaneError as e:
            logger.warning(
                "Registration failed, retrying",
                extra={"attempt": attempt, "retry_in_s": delay, "error": str(e)},
            )
            context.metrics.record_control_plane_failure("register")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        delay = min(delay * 2, max_delay_s)

    return False


async def run_agent(settings: Settings) -> int:
    """
    Run the agent until SIGINT or SIGTERM.

    Returns:
        Process exit code
    """
    context = AgentContext.build(settings)
    coordinator = ShutdownCoordinator(context)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(
        "Starting Lattice agent",
        extra={
            "control_plane_url": settings.control_plane_url,
            "tunnel_provider": settings.tunnel_provider,
            "port_range": f"{settings.port_range_min}-{settings.port_range_max}",
            "platform": platform.platform(),
        },
    )

    try:
        await context.container_manager.initialize()
    except RuntimeUnavailableError as e:
        logger.error("Container runtime unavailable at startup", extra={"error": str(e)})
        await coordinator.initiate_shutdown()
        return 1

    if settings.metrics_port:
        context.metrics.serve(settings.metrics_port)
        logger.info("Metrics endpoint started", extra={"port": settings.metrics_port})

    try:
        if await register_with_backoff(context, stop_event):
            await context.reconciler.rediscover()
            await context.task_runner.start()
            await context.reconciler.start()
            logger.info("Agent started", extra={"agent_id": context.control_plane.agent_id})
            await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await coordinator.initiate_shutdown()

    return 0


def main() -> None:
    """Main entry point for the Lattice agent."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    try:
        exit_code = asyncio.run(run_agent(settings))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
        exit_code = 0
    except Exception as e:
        logger.error("Agent error", extra={"error": str(e)})
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
