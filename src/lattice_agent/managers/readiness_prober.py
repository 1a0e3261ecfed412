"""Service-specific readiness probing for freshly started containers."""

import asyncio
from typing import Awaitable, Callable

import httpx
from docker.errors import DockerException

from lattice_agent.managers.container_manager import ContainerManager
from lattice_agent.models.deployments import DeploymentResult
from lattice_agent.models.workloads import ServiceType, Workload
from lattice_agent.utils import get_logger
from lattice_agent.utils.exceptions import ReadinessTimeoutError

logger = get_logger(__name__)

MINIO_HEALTH_PATH = "/minio/health/live"


class ReadinessProber:
    """
    Polls a container until its service answers or a timeout elapses.

    Postgres is checked with ``pg_isready`` inside the container, Redis with
    ``redis-cli ping`` and HTTP-style services through their health endpoint
    on the assigned host port. Each in-flight deployment runs its own probe
    so slow services do not hold up others.
    """

    def __init__(
        self,
        container_manager: ContainerManager,
        interval_s: float = 2.0,
        default_timeout_s: float = 60.0,
        probe_host: str = "127.0.0.1",
    ) -> None:
        """
        Initialize readiness prober.

        Args:
            container_manager: Runtime adapter used for in-container checks
            interval_s: Delay between attempts
            default_timeout_s: Timeout used when the caller passes none
            probe_host: Host the HTTP checks connect to
        """
        self.container_manager = container_manager
        self.interval_s = interval_s
        self.default_timeout_s = default_timeout_s
        self.probe_host = probe_host

    async def wait_ready(
        self,
        workload: Workload,
        result: DeploymentResult,
        timeout_s: float | None = None,
    ) -> None:
        """
        Block until the deployed service is ready.

        Args:
            workload: Workload that was deployed
            result: Deployment result (container id, ports, credentials)
            timeout_s: Overall timeout; defaults to the prober's

        Raises:
            ReadinessTimeoutError: If the service never became ready
        """
        timeout_s = timeout_s or self.default_timeout_s
        check = self._check_for(workload, result)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        attempts = 0

        while True:
            attempts += 1
            remaining = deadline - loop.time()
            try:
                ready = await asyncio.wait_for(check(), timeout=max(remaining, 0.1))
            except asyncio.TimeoutError:
                ready = False

            if ready:
                logger.info(
                    "Workload ready",
                    extra={"workload_id": workload.id, "type": workload.type.value, "attempts": attempts},
                )
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "Readiness probe timed out",
                    extra={"workload_id": workload.id, "type": workload.type.value, "attempts": attempts},
                )
                raise ReadinessTimeoutError(workload.type.value, timeout_s)

            await asyncio.sleep(min(self.interval_s, remaining))

    def _check_for(self, workload: Workload, result: DeploymentResult) -> Callable[[], Awaitable[bool]]:
        container_id = result.container_id

        if workload.type is ServiceType.POSTGRES:
            credentials = result.credentials
            cmd = [
                "pg_isready",
                "-h", "127.0.0.1",
                "-U", credentials.get("username", "postgres"),
                "-d", credentials.get("database", "postgres"),
            ]
            return lambda: self._exec_check(container_id, cmd, "accepting connections")

        if workload.type is ServiceType.REDIS:
            cmd = ["redis-cli", "--no-auth-warning", "-a", result.credentials.get("password", ""), "ping"]
            return lambda: self._exec_check(container_id, cmd, "PONG")

        if workload.type is ServiceType.MINIO:
            return lambda: self._http_check(result.assigned_port, MINIO_HEALTH_PATH)

        health_path = getattr(workload.config, "health_path", None)
        if health_path and result.assigned_port:
            return lambda: self._http_check(result.assigned_port, health_path)

        return lambda: self._running_check(container_id)

    async def _exec_check(self, container_id: str, cmd: list, expected: str) -> bool:
        try:
            _, output = await self.container_manager.exec(container_id, cmd)
        except DockerException as e:
            logger.debug("Readiness exec failed", extra={"docker_id": container_id, "error": str(e)})
            return False
        return expected in output

    async def _http_check(self, port: int | None, path: str) -> bool:
        if not port:
            return False
        if not path.startswith("/"):
            path = f"/{path}"
        url = f"http://{self.probe_host}:{port}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.interval_s + 1) as client:
                response = await client.get(url)
        except httpx.HTTPError:
            return False
        return response.is_success

    async def _running_check(self, container_id: str) -> bool:
        try:
            return await self.container_manager.status(container_id) == "running"
        except DockerException:
            return False
