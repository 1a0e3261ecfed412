"""Workload reconciliation: converge local containers onto the control plane's desired state."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set

from docker.errors import DockerException

from lattice_agent.clients.control_plane import AssignedWorkloads, ControlPlaneClient
from lattice_agent.config import Settings
from lattice_agent.managers.container_manager import ContainerManager
from lattice_agent.managers.port_allocator import PortAllocator
from lattice_agent.managers.readiness_prober import ReadinessProber
from lattice_agent.managers.recipes import build_container_spec, ports_required, tunnel_protocol
from lattice_agent.managers.task_scheduler import TaskRunner
from lattice_agent.managers.tunnel_manager import TunnelManager
from lattice_agent.models.deployments import ActiveDeployment, DeploymentResult
from lattice_agent.models.tunnels import TunnelHandle
from lattice_agent.models.workloads import ServiceType, Workload, WorkloadStatus
from lattice_agent.utils import get_logger
from lattice_agent.utils.cron import validate_schedule
from lattice_agent.utils.exceptions import (
    ControlPlaneError,
    DeploymentFailedError,
    LatticeAgentError,
    TunnelError,
    ValidationFailure,
)
from lattice_agent.utils.metrics_collector import MetricsCollector

logger = get_logger(__name__)

RUNTIME_UNAVAILABLE_MESSAGE = "Container runtime is unavailable"
SHUTDOWN_MESSAGE = "Agent shutting down"

# Docker states that mean the workload's process is gone
DEAD_STATES = {"exited", "dead", "removing"}


class WorkloadReconciler:
    """
    Central control loop of the agent.

    Each pass fetches the desired workload list, diffs it against the local
    active set and launches deploy or teardown operations. Operations for
    different workloads run concurrently, bounded by a semaphore; operations
    for the same workload are serialized by a per-workload lock, and a pass
    that finds a workload busy leaves it for a later pass.
    """

    def __init__(
        self,
        settings: Settings,
        control_plane: ControlPlaneClient,
        container_manager: ContainerManager,
        port_allocator: PortAllocator,
        prober: ReadinessProber,
        tunnel_manager: TunnelManager,
        task_runner: TaskRunner,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """
        Initialize reconciler.

        Args:
            settings: Agent settings (intervals, timeouts, thresholds)
            control_plane: Client for desired state and status reports
            container_manager: Runtime adapter
            port_allocator: Host port pool
            prober: Readiness prober
            tunnel_manager: Tunnel supervisor
            task_runner: Scheduled task runner
            metrics: Optional metrics collector
        """
        self.settings = settings
        self.control_plane = control_plane
        self.container_manager = container_manager
        self.port_allocator = port_allocator
        self.prober = prober
        self.tunnel_manager = tunnel_manager
        self.task_runner = task_runner
        self.metrics = metrics

        self.active: Dict[str, ActiveDeployment] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_operations)
        # in-flight operation task -> operation name
        self._inflight: Dict[asyncio.Task, str] = {}
        self._busy: Set[str] = set()

        self._runtime_failures = 0
        self._outage_reported: Set[str] = set()
        self._invalid_reported: Dict[str, str] = {}

        self._stopping = False
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        tunnel_manager.on_unexpected_exit = self._on_tunnel_exit

    @property
    def is_shutting_down(self) -> bool:
        return self._stopping

    @property
    def runtime_failures(self) -> int:
        return self._runtime_failures

    def get_deployment(self, workload_id: str) -> Optional[ActiveDeployment]:
        return self.active.get(workload_id)

    # Loops

    async def start(self) -> None:
        """Run one eager pass, then start the periodic reconcile and heartbeat loops."""
        await self.reconcile()
        self._loop_task = asyncio.create_task(self._run_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(
            "Reconciler started",
            extra={
                "reconcile_interval_s": self.settings.reconcile_interval_s,
                "heartbeat_interval_s": self.settings.heartbeat_interval_s,
            },
        )

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first; returns False once stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _run_loop(self) -> None:
        while await self._sleep(self.settings.reconcile_interval_s):
            try:
                await self.reconcile()
            except Exception as e:
                logger.error("Reconciliation pass failed", extra={"error": str(e)})

    async def _heartbeat_loop(self) -> None:
        while True:
            await self.send_heartbeat()
            if not await self._sleep(self.settings.heartbeat_interval_s):
                return

    async def send_heartbeat(self) -> bool:
        """
        Sample resource usage and report it. Failures are logged only.

        Returns:
            True if the heartbeat was delivered
        """
        try:
            usage = await self.container_manager.resource_usage()
            await self.control_plane.heartbeat(usage)
        except ControlPlaneError as e:
            logger.warning("Heartbeat failed", extra={"error": str(e)})
            if self.metrics:
                self.metrics.record_control_plane_failure("heartbeat")
            return False
        except (DockerException, LatticeAgentError, OSError) as e:
            logger.warning("Failed to sample resource usage", extra={"error": str(e)})
            return False

        logger.debug("Heartbeat sent", extra={"containers": usage.container_count})
        return True

    # Startup rediscovery

    async def rediscover(self) -> int:
        """
        Rebuild the active set from containers left by a previous run.

        Host ports are marked used, deployments restored and tunnels reopened
        for exposed services. A second container claiming an already restored
        workload is removed.

        Returns:
            Number of deployments restored
        """
        discovered = await self.container_manager.discover()
        # Running containers first so they win over stale duplicates
        discovered.sort(key=lambda c: c.status != "running")

        restored = 0
        for container in discovered:
            if container.workload_id in self.active:
                logger.warning(
                    "Removing duplicate container for workload",
                    extra={"workload_id": container.workload_id, "docker_id": container.container_id},
                )
                try:
                    await self.container_manager.remove(container.container_id)
                except (DockerException, LatticeAgentError, OSError) as e:
                    logger.error("Failed to remove duplicate container", extra={"error": str(e)})
                continue

            for port in container.host_ports:
                self.port_allocator.mark_used(port)

            running = container.status == "running"
            deployment = ActiveDeployment(
                workload_id=container.workload_id,
                service_type=container.service_type,
                container_id=container.container_id,
                host_ports=list(container.host_ports),
                internal_port=container.internal_port,
                status=WorkloadStatus.RUNNING if running else WorkloadStatus.ERROR,
                credentials=dict(container.credentials),
                rediscovered=True,
            )
            self.active[container.workload_id] = deployment
            restored += 1

            if running:
                await self._open_tunnel(deployment)
            else:
                # Same outcome as a liveness failure; a provisioning request redeploys it
                await self._report(
                    container.workload_id, WorkloadStatus.ERROR, message=f"Container {container.status}"
                )

        self._update_gauges()
        logger.info("Rediscovered deployments", extra={"count": restored})
        return restored

    # Reconciliation pass

    async def reconcile(self) -> List[asyncio.Task]:
        """
        Run one reconciliation pass.

        Returns:
            Operations launched by this pass (already running in the background)
        """
        if self._stopping:
            return []

        try:
            assigned = await self.control_plane.get_assigned_workloads()
        except ControlPlaneError as e:
            logger.warning("Failed to fetch desired state", extra={"error": str(e)})
            if self.metrics:
                self.metrics.record_control_plane_failure("get_workloads")
            return []

        runtime_ok = await self._check_runtime()
        launched: List[asyncio.Task] = []

        def launch(workload_id: str, operation: str, factory: Callable[[], Awaitable[None]]) -> None:
            task = self._spawn(workload_id, operation, factory)
            if task is not None:
                launched.append(task)

        desired = {w.id: w for w in assigned.workloads}
        desired_ids = assigned.ids

        self._report_invalid(assigned, launch)

        # Teardowns are attempted regardless of runtime health
        for workload_id, deployment in list(self.active.items()):
            workload = desired.get(workload_id)
            if workload_id not in desired_ids:
                launch(workload_id, "teardown", lambda d=deployment: self._teardown(d, remove_volumes=True))
            elif workload is None:
                continue
            elif workload.status in (WorkloadStatus.STOPPING, WorkloadStatus.STOPPED):
                launch(workload_id, "teardown", lambda d=deployment: self._teardown(d))
            elif workload.status is WorkloadStatus.PROVISIONING:
                if deployment.status is WorkloadStatus.ERROR:
                    # Redeploy requested for a failed deployment: clear it, deploy next pass
                    launch(workload_id, "reset", lambda d=deployment: self._teardown(d, report=False))
                elif deployment.status is WorkloadStatus.RUNNING:
                    # Control plane has not seen our running report yet
                    launch(workload_id, "report", lambda d=deployment: self._report_running(d))

        pending = [
            w for w in assigned.workloads
            if w.id not in self.active and w.status is WorkloadStatus.PROVISIONING
        ]

        if runtime_ok:
            for workload in pending:
                launch(workload.id, "deploy", lambda w=workload: self._deploy(w))
            await self._check_liveness(desired, launch)
        elif self._runtime_failures >= self.settings.runtime_failure_threshold:
            for workload in pending:
                if workload.id not in self._outage_reported:
                    launch(workload.id, "report", lambda w=workload: self._report_outage(w))

        self._prune_locks(desired_ids)
        return launched

    async def _check_runtime(self) -> bool:
        if await self.container_manager.is_available():
            if self._runtime_failures:
                logger.info("Container runtime recovered", extra={"failed_checks": self._runtime_failures})
            self._runtime_failures = 0
            self._outage_reported.clear()
            return True

        self._runtime_failures += 1
        logger.warning(
            "Container runtime unavailable, deployments paused",
            extra={"consecutive_failures": self._runtime_failures},
        )
        return False

    def _spawn(
        self, workload_id: str, operation: str, factory: Callable[[], Awaitable[None]]
    ) -> Optional[asyncio.Task]:
        if workload_id in self._busy:
            logger.debug(
                "Workload busy, skipping this pass",
                extra={"workload_id": workload_id, "operation": operation},
            )
            return None

        lock = self._locks.setdefault(workload_id, asyncio.Lock())
        self._busy.add(workload_id)

        async def _run() -> None:
            try:
                async with lock:
                    async with self._semaphore:
                        await factory()
            except Exception as e:
                logger.error(
                    "Workload operation failed",
                    extra={"workload_id": workload_id, "operation": operation, "error": str(e)},
                )
            finally:
                self._busy.discard(workload_id)

        task = asyncio.create_task(_run())
        self._inflight[task] = operation
        task.add_done_callback(lambda t: self._inflight.pop(t, None))
        return task

    def _prune_locks(self, desired_ids: Set[str]) -> None:
        for workload_id in list(self._locks):
            if workload_id in desired_ids or workload_id in self.active:
                continue
            if not self._locks[workload_id].locked():
                del self._locks[workload_id]
        for workload_id in list(self._invalid_reported):
            if workload_id not in desired_ids:
                del self._invalid_reported[workload_id]

    async def drain(self) -> None:
        """Wait for every in-flight operation."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _report_invalid(self, assigned: AssignedWorkloads, launch: Callable) -> None:
        for error in assigned.invalid:
            if error.workload_id in self.active:
                continue
            if self._invalid_reported.get(error.workload_id) == error.reason:
                continue
            self._invalid_reported[error.workload_id] = error.reason
            launch(
                error.workload_id,
                "report",
                lambda e=error: self._report(e.workload_id, WorkloadStatus.ERROR, message=str(e)),
            )

    # Deploy sequence

    async def _deploy(self, workload: Workload) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        ports: List[int] = []
        result: Optional[DeploymentResult] = None

        logger.info("Deploying workload", extra={"workload_id": workload.id, "type": workload.type.value})

        try:
            for job in workload.cron_jobs:
                validate_schedule(job.schedule)

            needed = ports_required(workload)
            if needed:
                ports = self.port_allocator.allocate_many(needed)

            spec = build_container_spec(workload, ports)
            result = await self.container_manager.deploy(spec)
            await self.prober.wait_ready(workload, result)

            if workload.type is ServiceType.MINIO:
                await self.container_manager.create_buckets(
                    result.container_id, result.credentials, workload.config.buckets
                )
        except asyncio.CancelledError:
            logger.warning("Deploy cancelled, rolling back", extra={"workload_id": workload.id})
            await self._compensate(workload, ports, result)
            raise
        except Exception as e:
            await self._compensate(workload, ports, result)
            await self._deploy_failed(workload, e)
            return

        deployment = ActiveDeployment(
            workload_id=workload.id,
            service_type=workload.type,
            container_id=result.container_id,
            host_ports=ports,
            internal_port=result.internal_port,
            credentials=dict(result.credentials),
        )
        self.active[workload.id] = deployment

        notes = []
        tunnel_note = await self._open_tunnel(deployment)
        if tunnel_note:
            notes.append(tunnel_note)

        for job in workload.cron_jobs:
            try:
                await self.task_runner.deploy(workload.id, job)
            except ValidationFailure as e:
                notes.append(str(e))

        duration = loop.time() - started
        if self.metrics:
            self.metrics.record_deployment(workload.type.value, "success")
            self.metrics.record_deploy_duration(duration)
        self._update_gauges()

        logger.info(
            "Workload running",
            extra={
                "workload_id": workload.id,
                "docker_id": result.container_id,
                "ports": ports,
                "public_url": deployment.public_url,
                "duration_s": round(duration, 2),
            },
        )
        await self._report_running(deployment, message="; ".join(notes) or None)

    async def _compensate(
        self, workload: Workload, ports: List[int], result: Optional[DeploymentResult]
    ) -> None:
        try:
            if result is not None:
                await self.container_manager.remove(result.container_id)
        except Exception as e:
            logger.error(
                "Failed to remove container after failed deploy",
                extra={"workload_id": workload.id, "docker_id": result.container_id, "error": str(e)},
            )
        finally:
            for port in ports:
                self.port_allocator.release(port)
            self._update_gauges()

    async def _deploy_failed(self, workload: Workload, error: Exception) -> None:
        if isinstance(error, DeploymentFailedError) and not await self.container_manager.is_available():
            # Outage, not a workload fault; reported once the failure threshold is reached
            logger.warning(
                "Deploy deferred, container runtime unavailable",
                extra={"workload_id": workload.id, "error": str(error)},
            )
            return

        logger.error(
            "Workload deployment failed",
            extra={"workload_id": workload.id, "type": workload.type.value, "error": str(error)},
        )
        if self.metrics:
            self.metrics.record_deployment(workload.type.value, "failure")
        await self._report(workload.id, WorkloadStatus.ERROR, message=str(error))

    async def _open_tunnel(self, deployment: ActiveDeployment) -> Optional[str]:
        """Open a tunnel for a deployment's primary port; returns a note on failure."""
        port = deployment.primary_port
        if port is None or not self.tunnel_manager.enabled:
            return None

        try:
            handle = await self.tunnel_manager.open(
                port,
                protocol=tunnel_protocol(deployment.service_type),
                subdomain_hint=deployment.workload_id,
            )
        except TunnelError as e:
            logger.warning(
                "Tunnel unavailable, workload running without public URL",
                extra={"workload_id": deployment.workload_id, "port": port, "error": str(e)},
            )
            if self.metrics:
                self.metrics.record_tunnel_open(self.tunnel_manager.provider_name, "failure")
            return str(e)

        deployment.tunnel_id = handle.id
        deployment.public_url = handle.public_url
        if self.metrics:
            self.metrics.record_tunnel_open(self.tunnel_manager.provider_name, "success")
        self._update_gauges()
        return None

    # Teardown sequence

    async def _teardown(
        self,
        deployment: ActiveDeployment,
        remove_volumes: bool = False,
        report: bool = True,
        message: str | None = None,
    ) -> None:
        """
        Release everything a deployment holds. Every step is attempted even
        if an earlier one fails.
        """
        workload_id = deployment.workload_id
        deployment.status = WorkloadStatus.STOPPING
        failed_steps = []

        logger.info("Tearing down workload", extra={"workload_id": workload_id})

        if deployment.tunnel_id:
            try:
                await self.tunnel_manager.close(deployment.tunnel_id)
            except Exception as e:
                failed_steps.append("tunnel")
                logger.error("Failed to close tunnel", extra={"workload_id": workload_id, "error": str(e)})
            deployment.tunnel_id = None
            deployment.public_url = None

        try:
            await self.container_manager.stop(deployment.container_id)
        except Exception as e:
            failed_steps.append("stop")
            logger.error("Failed to stop container", extra={"workload_id": workload_id, "error": str(e)})

        try:
            await self.container_manager.remove(deployment.container_id)
        except Exception as e:
            failed_steps.append("remove")
            logger.error("Failed to remove container", extra={"workload_id": workload_id, "error": str(e)})

        if remove_volumes:
            try:
                await self.container_manager.remove_volumes(workload_id)
            except Exception as e:
                failed_steps.append("volumes")
                logger.error("Failed to remove volumes", extra={"workload_id": workload_id, "error": str(e)})

        for port in deployment.host_ports:
            self.port_allocator.release(port)

        try:
            await self.task_runner.remove(workload_id)
        except Exception as e:
            failed_steps.append("tasks")
            logger.error("Failed to remove scheduled tasks", extra={"workload_id": workload_id, "error": str(e)})

        deployment.status = WorkloadStatus.STOPPED
        if report:
            await self._report(workload_id, WorkloadStatus.STOPPED, message=message)

        self.active.pop(workload_id, None)

        if self.metrics:
            self.metrics.record_teardown("partial" if failed_steps else "success")
        self._update_gauges()

        logger.info(
            "Workload torn down",
            extra={"workload_id": workload_id, "failed_steps": failed_steps},
        )

    # Liveness and reporting

    async def _check_liveness(self, desired: Dict[str, Workload], launch: Callable) -> None:
        """Move running deployments whose container died to error, reporting once."""
        for workload_id, deployment in list(self.active.items()):
            if deployment.status is not WorkloadStatus.RUNNING:
                continue
            if workload_id in self._busy:
                continue

            try:
                state = await self.container_manager.status(deployment.container_id)
            except (DockerException, LatticeAgentError, OSError) as e:
                logger.debug("Liveness check failed", extra={"workload_id": workload_id, "error": str(e)})
                continue

            if state is not None and state not in DEAD_STATES:
                continue

            deployment.status = WorkloadStatus.ERROR
            message = "Container disappeared" if state is None else f"Container {state}"
            logger.warning("Workload container is not running", extra={"workload_id": workload_id, "state": state})

            if workload_id in desired:
                launch(
                    workload_id,
                    "report",
                    lambda w=workload_id, m=message: self._report(w, WorkloadStatus.ERROR, message=m),
                )

    async def _on_tunnel_exit(self, handle: TunnelHandle) -> None:
        for deployment in list(self.active.values()):
            if deployment.tunnel_id != handle.id:
                continue
            deployment.tunnel_id = None
            deployment.public_url = None
            self._update_gauges()
            if deployment.status is WorkloadStatus.RUNNING and not self._stopping:
                await self._report_running(
                    deployment, message=f"Tunnel exited with code {handle.exit_code}"
                )
            return

    async def _report_running(self, deployment: ActiveDeployment, message: str | None = None) -> None:
        await self._report(
            deployment.workload_id,
            WorkloadStatus.RUNNING,
            message=message,
            public_url=deployment.public_url,
            credentials=deployment.credentials or None,
        )

    async def _report_outage(self, workload: Workload) -> None:
        self._outage_reported.add(workload.id)
        await self._report(workload.id, WorkloadStatus.ERROR, message=RUNTIME_UNAVAILABLE_MESSAGE)

    async def _report(
        self,
        workload_id: str,
        status: WorkloadStatus,
        message: str | None = None,
        public_url: str | None = None,
        credentials: Dict[str, str] | None = None,
    ) -> bool:
        try:
            await self.control_plane.report_status(
                workload_id, status, message=message, public_url=public_url, credentials=credentials
            )
        except ControlPlaneError as e:
            logger.warning(
                "Failed to report workload status",
                extra={"workload_id": workload_id, "status": status.value, "error": str(e)},
            )
            if self.metrics:
                self.metrics.record_control_plane_failure("report_status")
            return False
        return True

    def _update_gauges(self) -> None:
        if not self.metrics:
            return
        self.metrics.set_active_deployments(len(self.active))
        self.metrics.set_allocated_ports(len(self.port_allocator.allocated))
        self.metrics.set_open_tunnels(len(self.tunnel_manager))

    # Shutdown

    async def _shutdown_teardown(self, workload_id: str) -> None:
        async with self._locks.setdefault(workload_id, asyncio.Lock()):
            deployment = self.active.get(workload_id)
            if deployment is None:
                return
            await self._teardown(deployment, message=SHUTDOWN_MESSAGE)

    async def shutdown(self, timeout_s: float | None = None) -> None:
        """
        Stop accepting passes and tear down every active workload within the
        shutdown window.

        In-flight deploys are cancelled and roll themselves back. Teardown of
        idle workloads starts at once, alongside the remaining in-flight
        operations; anything that became active meanwhile is torn down after.
        """
        if self._stopping:
            return
        self._stopping = True
        self._stop_event.set()
        timeout_s = timeout_s if timeout_s is not None else self.settings.shutdown_timeout_s

        logger.info("Reconciler shutting down", extra={"active": len(self.active), "timeout_s": timeout_s})

        for task in (self._loop_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        cancelled = [task for task, operation in self._inflight.items() if operation == "deploy"]
        for task in cancelled:
            task.cancel()
        if cancelled:
            logger.info("Cancelled in-flight deploys", extra={"count": len(cancelled)})

        async def _finish() -> None:
            await asyncio.gather(
                self.drain(),
                *(self._shutdown_teardown(w) for w in list(self.active)),
                return_exceptions=True,
            )
            await asyncio.gather(
                *(self._shutdown_teardown(w) for w in list(self.active)),
                return_exceptions=True,
            )

        try:
            await asyncio.wait_for(_finish(), timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Shutdown window elapsed with workloads still active",
                extra={"remaining": list(self.active)},
            )

        logger.info("Reconciler stopped")
