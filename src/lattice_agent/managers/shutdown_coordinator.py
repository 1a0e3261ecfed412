"""Shutdown coordinator for graceful agent shutdown."""

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, List, Tuple

from lattice_agent.utils import get_logger

if TYPE_CHECKING:
    from lattice_agent.context import AgentContext

logger = get_logger(__name__)


class ShutdownCoordinator:
    """
    Coordinator for graceful agent shutdown.

    Components are stopped in a fixed order: reconciler, tunnels, runtime
    adapter, task runner, control plane client. A failing step is logged and
    the next one still runs.
    """

    def __init__(self, context: "AgentContext") -> None:
        """
        Initialize shutdown coordinator.

        Args:
            context: Components to stop
        """
        self.context = context
        self._shutdown_initiated = False
        self._shutdown_event = asyncio.Event()

    def is_shutting_down(self) -> bool:
        """
        Check if shutdown has been initiated.

        Returns:
            True if shutdown is in progress
        """
        return self._shutdown_initiated

    def _steps(self) -> List[Tuple[str, Callable[[], Awaitable[None]]]]:
        context = self.context

        async def close_runtime() -> None:
            context.container_manager.close()

        return [
            ("reconciler", context.reconciler.shutdown),
            ("tunnels", context.tunnel_manager.close_all),
            ("runtime", close_runtime),
            ("task_runner", context.task_runner.shutdown),
            ("control_plane", context.control_plane.close),
        ]

    async def initiate_shutdown(self) -> None:
        """Run the shutdown sequence once; later calls are ignored."""
        if self._shutdown_initiated:
            logger.warning("Shutdown already initiated")
            return

        self._shutdown_initiated = True
        logger.info("Initiating graceful shutdown")

        for name, step in self._steps():
            try:
                await step()
                logger.info("Shutdown step completed", extra={"step": name})
            except Exception as e:
                logger.error("Shutdown step failed", extra={"step": name, "error": str(e)})

        self._shutdown_event.set()
        logger.info("Graceful shutdown completed")

    async def wait_for_shutdown(self) -> None:
        """Wait for shutdown to complete."""
        await self._shutdown_event.wait()
