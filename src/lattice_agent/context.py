"""Explicitly constructed agent components."""

from dataclasses import dataclass

from lattice_agent.clients.control_plane import ControlPlaneClient
from lattice_agent.config import Settings
from lattice_agent.managers.container_manager import ContainerManager
from lattice_agent.managers.port_allocator import PortAllocator
from lattice_agent.managers.readiness_prober import ReadinessProber
from lattice_agent.managers.reconciliation_manager import WorkloadReconciler
from lattice_agent.managers.task_scheduler import TaskRunner
from lattice_agent.managers.tunnel_manager import TunnelManager, create_provider
from lattice_agent.utils.docker_client import DockerClientManager
from lattice_agent.utils.metrics_collector import MetricsCollector


@dataclass
class AgentContext:
    """Every long-lived component of one agent, wired together once at startup."""

    settings: Settings
    metrics: MetricsCollector
    docker_manager: DockerClientManager
    port_allocator: PortAllocator
    container_manager: ContainerManager
    prober: ReadinessProber
    tunnel_manager: TunnelManager
    task_runner: TaskRunner
    control_plane: ControlPlaneClient
    reconciler: WorkloadReconciler

    @classmethod
    def build(cls, settings: Settings, metrics: MetricsCollector | None = None) -> "AgentContext":
        """
        Construct and wire all components from settings.

        Must be called with a running event loop, since several components
        create asyncio primitives.
        """
        metrics = metrics or MetricsCollector()
        docker_manager = DockerClientManager(settings)
        port_allocator = PortAllocator(settings.port_range_min, settings.port_range_max)
        container_manager = ContainerManager(settings, docker_manager)
        prober = ReadinessProber(
            container_manager,
            interval_s=settings.readiness_interval_s,
            default_timeout_s=settings.readiness_timeout_s,
        )
        tunnel_manager = TunnelManager(
            create_provider(settings.tunnel_provider, settings.tunnel_binary, settings.ngrok_authtoken),
            url_timeout_s=settings.tunnel_url_timeout_s,
        )
        task_runner = TaskRunner(
            default_timeout_s=settings.cron_default_timeout_s,
            history_limit=settings.cron_history_limit,
            metrics=metrics,
        )
        control_plane = ControlPlaneClient(
            settings.control_plane_url,
            agent_secret=settings.agent_secret,
            timeout_s=settings.control_plane_timeout_s,
        )
        reconciler = WorkloadReconciler(
            settings,
            control_plane,
            container_manager,
            port_allocator,
            prober,
            tunnel_manager,
            task_runner,
            metrics=metrics,
        )
        return cls(
            settings=settings,
            metrics=metrics,
            docker_manager=docker_manager,
            port_allocator=port_allocator,
            container_manager=container_manager,
            prober=prober,
            tunnel_manager=tunnel_manager,
            task_runner=task_runner,
            control_plane=control_plane,
            reconciler=reconciler,
        )
