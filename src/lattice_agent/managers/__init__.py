"""Manager modules for workload lifecycle operations."""

from .container_manager import ContainerManager
from .port_allocator import PortAllocator
from .readiness_prober import ReadinessProber
from .reconciliation_manager import WorkloadReconciler
from .shutdown_coordinator import ShutdownCoordinator
from .task_scheduler import TaskRunner
from .tunnel_manager import (
    CloudflaredProvider,
    LocaltunnelProvider,
    NgrokProvider,
    TunnelManager,
    TunnelProvider,
    create_provider,
)

__all__ = [
    "CloudflaredProvider",
    "ContainerManager",
    "LocaltunnelProvider",
    "NgrokProvider",
    "PortAllocator",
    "ReadinessProber",
    "ShutdownCoordinator",
    "TaskRunner",
    "TunnelManager",
    "TunnelProvider",
    "WorkloadReconciler",
    "create_provider",
]
