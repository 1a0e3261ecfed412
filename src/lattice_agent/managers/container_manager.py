"""Container runtime adapter for workload containers."""

import asyncio
from typing import Dict, List, Optional, Tuple

import psutil
from docker import DockerClient
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container as DockerContainer

from lattice_agent.config import Settings
from lattice_agent.managers.recipes import (
    LABEL_INTERNAL_PORT,
    LABEL_MANAGED,
    LABEL_SERVICE_TYPE,
    LABEL_WORKLOAD_ID,
    ContainerSpec,
    recover_credentials,
)
from lattice_agent.models.deployments import DeploymentResult, DiscoveredContainer, ResourceUsage
from lattice_agent.models.workloads import ServiceType
from lattice_agent.utils import get_logger
from lattice_agent.utils.docker_client import DockerClientManager
from lattice_agent.utils.exceptions import DeploymentFailedError, RuntimeUnavailableError

logger = get_logger(__name__)

MANAGED_FILTER = {"label": f"{LABEL_MANAGED}=true"}


def _cpu_percent(stats: Dict) -> float:
    """CPU usage from a one-shot Docker stats sample."""
    try:
        cpu = stats["cpu_stats"]
        precpu = stats["precpu_stats"]
        cpu_delta = cpu["cpu_usage"]["total_usage"] - precpu["cpu_usage"]["total_usage"]
        system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
        online = cpu.get("online_cpus") or len(cpu["cpu_usage"].get("percpu_usage") or [1])
    except (KeyError, TypeError):
        return 0.0

    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    return (cpu_delta / system_delta) * online * 100.0


def _published_ports(docker_container: DockerContainer) -> Tuple[List[int], Optional[int]]:
    """Host ports published by a container, primary (labelled internal port) first."""
    ports = docker_container.attrs.get("NetworkSettings", {}).get("Ports") or {}
    if not ports:
        # Stopped containers only carry the requested bindings
        bindings = docker_container.attrs.get("HostConfig", {}).get("PortBindings") or {}
        ports = bindings

    labels = docker_container.labels or {}
    internal = labels.get(LABEL_INTERNAL_PORT)
    internal_port = int(internal) if internal and internal.isdigit() else None

    primary: List[int] = []
    others: List[int] = []
    for container_port, host_bindings in ports.items():
        for binding in host_bindings or []:
            host_port = binding.get("HostPort")
            if not host_port or not str(host_port).isdigit():
                continue
            host_port = int(host_port)
            if internal_port is not None and container_port == f"{internal_port}/tcp":
                if host_port not in primary:
                    primary.append(host_port)
            elif host_port not in others and host_port not in primary:
                others.append(host_port)

    return primary + others, internal_port


class ContainerManager:
    """Manager for workload container lifecycle operations."""

    def __init__(self, settings: Settings, docker_manager: DockerClientManager) -> None:
        """
        Initialize container manager.

        Args:
            settings: Agent settings
            docker_manager: Owner of the Docker client connection
        """
        self.settings = settings
        self.docker_manager = docker_manager

    @property
    def docker_client(self) -> DockerClient:
        return self.docker_manager.get_client()

    async def initialize(self) -> None:
        """
        Connect to the runtime, ensure the workload network exists and
        optionally pre-pull base images.

        Raises:
            RuntimeUnavailableError: If the Docker daemon cannot be reached
        """
        await asyncio.to_thread(self.docker_manager.get_client)
        await asyncio.to_thread(self._ensure_network)

        if self.settings.pull_base_images:
            for image in self.settings.base_images_list:
                try:
                    logger.info("Pulling base image", extra={"image": image})
                    await asyncio.to_thread(self.docker_client.images.pull, image)
                except DockerException as e:
                    logger.warning("Failed to pull base image", extra={"image": image, "error": str(e)})

    def _ensure_network(self) -> None:
        name = self.settings.network_name
        try:
            if self.docker_client.networks.list(names=[name]):
                return
            self.docker_client.networks.create(
                name,
                driver="bridge",
                attachable=True,
                labels={LABEL_MANAGED: "true"},
            )
            logger.info("Created workload network", extra={"network": name})
        except APIError as e:
            logger.warning("Failed to create workload network", extra={"network": name, "error": str(e)})

    async def is_available(self) -> bool:
        """Cheap liveness check of the Docker daemon."""
        try:
            return bool(await asyncio.to_thread(self.docker_client.ping))
        except (DockerException, RuntimeUnavailableError, OSError) as e:
            logger.debug("Docker daemon ping failed", extra={"error": str(e)})
            return False

    async def runtime_version(self) -> str:
        """Docker engine version, or "unknown" if it cannot be read."""
        try:
            version = await asyncio.to_thread(self.docker_client.version)
        except (DockerException, RuntimeUnavailableError) as e:
            logger.warning("Failed to read Docker version", extra={"error": str(e)})
            return "unknown"
        return version.get("Version", "unknown")

    def close(self) -> None:
        self.docker_manager.close()

    async def deploy(self, spec: ContainerSpec) -> DeploymentResult:
        """
        Create and start a workload container.

        Either the container ends up running or nothing is left behind: a
        container that was created but failed to start is removed before the
        error propagates.

        Args:
            spec: Container spec produced by a recipe

        Returns:
            Deployment result with container id and ports

        Raises:
            DeploymentFailedError: If any step fails
        """
        return await asyncio.to_thread(self._deploy_sync, spec)

    def _deploy_sync(self, spec: ContainerSpec) -> DeploymentResult:
        try:
            client = self.docker_client
        except RuntimeUnavailableError as e:
            raise DeploymentFailedError(spec.workload_id, str(e), e)

        try:
            self._ensure_image(spec.image)
            self._remove_stale(spec.name)

            volumes = None
            if spec.volume_name:
                self._ensure_volume(spec)
                volumes = {spec.volume_name: {"bind": spec.volume_target, "mode": "rw"}}

            docker_container: DockerContainer = client.containers.create(
                image=spec.image,
                name=spec.name,
                command=spec.command,
                environment=spec.environment,
                ports=spec.docker_ports,
                labels=spec.labels,
                volumes=volumes,
                mem_limit=spec.mem_limit,
                cpu_shares=spec.cpu_shares,
                restart_policy=spec.restart_policy,
                network=self.settings.network_name,
                detach=True,
            )
        except ImageNotFound as e:
            raise DeploymentFailedError(spec.workload_id, f"image {spec.image} not found", e)
        except DockerException as e:
            logger.error(
                "Docker API error creating container",
                extra={"workload_id": spec.workload_id, "error": str(e)},
            )
            raise DeploymentFailedError(spec.workload_id, f"failed to create container: {e}", e)

        logger.info(
            "Docker container created",
            extra={
                "workload_id": spec.workload_id,
                "docker_id": docker_container.id,
                "image": spec.image,
                "ports": spec.host_ports,
            },
        )

        try:
            docker_container.start()
        except DockerException as e:
            logger.error(
                "Docker API error starting container, removing it",
                extra={"workload_id": spec.workload_id, "docker_id": docker_container.id, "error": str(e)},
            )
            try:
                docker_container.remove(force=True)
            except DockerException as cleanup_error:
                logger.error(
                    "Failed to remove container after start failure",
                    extra={"docker_id": docker_container.id, "error": str(cleanup_error)},
                )
            raise DeploymentFailedError(spec.workload_id, f"failed to start container: {e}", e)

        logger.info(
            "Docker container started",
            extra={"workload_id": spec.workload_id, "docker_id": docker_container.id},
        )

        host_ports = spec.host_ports
        return DeploymentResult(
            container_id=docker_container.id,
            assigned_port=host_ports[0] if host_ports else None,
            internal_port=spec.internal_port,
            extra_ports=host_ports[1:],
            credentials=dict(spec.credentials),
        )

    def _ensure_image(self, image: str) -> None:
        try:
            self.docker_client.images.get(image)
        except ImageNotFound:
            logger.info("Pulling image", extra={"image": image})
            self.docker_client.images.pull(image)

    def _ensure_volume(self, spec: ContainerSpec) -> None:
        try:
            self.docker_client.volumes.get(spec.volume_name)
        except NotFound:
            self.docker_client.volumes.create(
                name=spec.volume_name,
                labels={LABEL_MANAGED: "true", LABEL_WORKLOAD_ID: spec.workload_id},
            )
            logger.info("Volume created", extra={"volume_name": spec.volume_name})

    def _remove_stale(self, name: str) -> None:
        """Remove a leftover container holding the name we are about to use."""
        try:
            stale = self.docker_client.containers.get(name)
        except NotFound:
            return
        logger.warning("Removing stale container with same name", extra={"name": name, "docker_id": stale.id})
        stale.remove(force=True)

    async def stop(self, container_id: str, timeout: int = 10) -> None:
        """
        Stop a container gracefully. A missing or already stopped container
        counts as stopped.

        Args:
            container_id: Docker container id
            timeout: Seconds before the runtime force-kills
        """
        await asyncio.to_thread(self._stop_sync, container_id, timeout)

    def _stop_sync(self, container_id: str, timeout: int) -> None:
        try:
            docker_container = self.docker_client.containers.get(container_id)
            docker_container.stop(timeout=timeout)
            logger.info("Docker container stopped", extra={"docker_id": container_id})
        except NotFound:
            logger.info("Container already gone", extra={"docker_id": container_id})
        except APIError as e:
            if e.status_code == 304:
                return
            logger.error("Docker API error stopping container", extra={"error": str(e)})
            raise

    async def remove(self, container_id: str) -> None:
        """
        Stop (if needed) and remove a container. Idempotent.

        Args:
            container_id: Docker container id
        """
        await asyncio.to_thread(self._remove_sync, container_id)

    def _remove_sync(self, container_id: str) -> None:
        try:
            docker_container = self.docker_client.containers.get(container_id)
        except NotFound:
            logger.info("Container not found in Docker, nothing to remove", extra={"docker_id": container_id})
            return

        try:
            docker_container.stop(timeout=10)
        except NotFound:
            return
        except APIError as e:
            # Already stopped is fine; anything else is retried by the forced remove
            logger.debug("Stop before remove failed", extra={"docker_id": container_id, "error": str(e)})

        try:
            docker_container.remove(force=True)
        except NotFound:
            return
        logger.info("Docker container removed", extra={"docker_id": container_id})

    async def remove_volumes(self, workload_id: str) -> int:
        """
        Remove the data volumes belonging to a workload.

        Args:
            workload_id: Workload whose volumes should go

        Returns:
            Number of volumes removed
        """
        return await asyncio.to_thread(self._remove_volumes_sync, workload_id)

    def _remove_volumes_sync(self, workload_id: str) -> int:
        filters = {"label": [f"{LABEL_MANAGED}=true", f"{LABEL_WORKLOAD_ID}={workload_id}"]}
        removed = 0
        for volume in self.docker_client.volumes.list(filters=filters):
            try:
                volume.remove(force=True)
                removed += 1
                logger.info("Volume removed", extra={"volume_name": volume.name, "workload_id": workload_id})
            except NotFound:
                pass
            except APIError as e:
                logger.warning("Failed to remove volume", extra={"volume_name": volume.name, "error": str(e)})
        return removed

    async def status(self, container_id: str) -> Optional[str]:
        """
        Inspect a container's state.

        Returns:
            Docker status string (running, exited, ...) or None if the container is gone
        """
        def _status() -> Optional[str]:
            try:
                docker_container = self.docker_client.containers.get(container_id)
            except NotFound:
                return None
            return docker_container.status

        return await asyncio.to_thread(_status)

    async def exec(self, container_id: str, cmd: List[str]) -> Tuple[int, str]:
        """
        Run a command inside a container.

        Returns:
            Exit code and combined output
        """
        def _exec() -> Tuple[int, str]:
            docker_container = self.docker_client.containers.get(container_id)
            result = docker_container.exec_run(cmd=cmd, demux=False)
            output = result.output.decode("utf-8", errors="replace") if result.output else ""
            return result.exit_code, output

        return await asyncio.to_thread(_exec)

    async def logs(self, container_id: str, lines: int = 100) -> List[str]:
        """
        Tail a container's logs.

        Args:
            container_id: Docker container id
            lines: Number of trailing lines

        Returns:
            Log lines, oldest first
        """
        def _logs() -> List[str]:
            docker_container = self.docker_client.containers.get(container_id)
            raw = docker_container.logs(tail=lines, stdout=True, stderr=True)
            return raw.decode("utf-8", errors="replace").splitlines()

        return await asyncio.to_thread(_logs)

    async def stats(self, container_id: str) -> Dict:
        """
        Point-in-time cpu and memory usage of one container.

        Returns:
            Dictionary with cpu_percent and memory_bytes
        """
        def _stats() -> Dict:
            docker_container = self.docker_client.containers.get(container_id)
            raw = docker_container.stats(stream=False)
            return {
                "cpu_percent": _cpu_percent(raw),
                "memory_bytes": int(raw.get("memory_stats", {}).get("usage") or 0),
            }

        return await asyncio.to_thread(_stats)

    async def resource_usage(self) -> ResourceUsage:
        """
        Aggregate usage of managed containers plus host memory and disk.

        Containers whose stats cannot be read are skipped.
        """
        def _usage() -> ResourceUsage:
            usage = ResourceUsage()
            try:
                containers = self.docker_client.containers.list(filters=MANAGED_FILTER)
            except DockerException as e:
                logger.warning("Failed to list containers for usage", extra={"error": str(e)})
                containers = []

            usage.container_count = len(containers)
            for docker_container in containers:
                try:
                    raw = docker_container.stats(stream=False)
                except DockerException:
                    continue
                usage.cpu_percent += _cpu_percent(raw)
                usage.memory_bytes += int(raw.get("memory_stats", {}).get("usage") or 0)

            memory = psutil.virtual_memory()
            disk = psutil.disk_usage("/")
            usage.available_memory_bytes = int(memory.available)
            usage.disk_bytes = int(disk.used)
            usage.available_disk_bytes = int(disk.free)
            return usage

        return await asyncio.to_thread(_usage)

    async def list_managed(self, workload_id: str | None = None) -> List[str]:
        """
        Ids of managed containers, optionally for one workload.
        """
        labels = [f"{LABEL_MANAGED}=true"]
        if workload_id:
            labels.append(f"{LABEL_WORKLOAD_ID}={workload_id}")

        def _list() -> List[str]:
            return [c.id for c in self.docker_client.containers.list(all=True, filters={"label": labels})]

        return await asyncio.to_thread(_list)

    async def discover(self) -> List[DiscoveredContainer]:
        """
        Find managed containers left over from a previous agent run.

        Returns:
            Discovered containers with their published host ports
        """
        return await asyncio.to_thread(self._discover_sync)

    def _discover_sync(self) -> List[DiscoveredContainer]:
        try:
            containers = self.docker_client.containers.list(all=True, filters=MANAGED_FILTER)
        except APIError as e:
            logger.error("Failed to discover containers", extra={"error": str(e)})
            return []

        discovered = []
        for docker_container in containers:
            labels = docker_container.labels or {}
            workload_id = labels.get(LABEL_WORKLOAD_ID)
            if not workload_id:
                logger.warning(
                    "Managed container missing workload label",
                    extra={"docker_id": docker_container.id},
                )
                continue

            try:
                service_type = ServiceType(labels.get(LABEL_SERVICE_TYPE, ServiceType.CUSTOM.value))
            except ValueError:
                service_type = ServiceType.CUSTOM

            host_ports, internal_port = _published_ports(docker_container)
            config = docker_container.attrs.get("Config") or {}
            discovered.append(
                DiscoveredContainer(
                    workload_id=workload_id,
                    service_type=service_type,
                    container_id=docker_container.id,
                    status=docker_container.status,
                    host_ports=host_ports,
                    internal_port=internal_port,
                    credentials=recover_credentials(service_type, config.get("Env"), config.get("Cmd")),
                )
            )

        logger.info("Discovered managed containers", extra={"count": len(discovered)})
        return discovered

    async def create_buckets(self, container_id: str, credentials: Dict[str, str], buckets: List[str]) -> None:
        """
        Create MinIO buckets with the ``mc`` client shipped in the image.
        Failures are logged; the deployment is not failed over them.
        """
        if not buckets:
            return

        alias_cmd = [
            "mc", "alias", "set", "local", "http://127.0.0.1:9000",
            credentials.get("accessKey", ""), credentials.get("secretKey", ""),
        ]
        try:
            exit_code, output = await self.exec(container_id, alias_cmd)
            if exit_code != 0:
                logger.warning("Failed to configure mc alias", extra={"output": output[-500:]})
                return
            for bucket in buckets:
                exit_code, output = await self.exec(
                    container_id, ["mc", "mb", "--ignore-existing", f"local/{bucket}"]
                )
                if exit_code != 0:
                    logger.warning("Failed to create bucket", extra={"bucket": bucket, "output": output[-500:]})
                else:
                    logger.info("Bucket created", extra={"bucket": bucket})
        except DockerException as e:
            logger.warning("Bucket creation failed", extra={"error": str(e)})
