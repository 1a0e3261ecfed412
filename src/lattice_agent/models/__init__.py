"""Data models for the Lattice agent."""

from .deployments import ActiveDeployment, DeploymentResult, DiscoveredContainer, ResourceUsage
from .tasks import ScheduledTask, TaskExecution, TaskStatus
from .tunnels import TunnelHandle, TunnelStatus
from .workloads import (
    CronJobSpec,
    CustomConfig,
    HttpAppConfig,
    MinioConfig,
    PostgresConfig,
    RedisConfig,
    ResourceLimits,
    ServiceConfig,
    ServiceType,
    Workload,
    WorkloadStatus,
)

__all__ = [
    "ActiveDeployment",
    "CronJobSpec",
    "CustomConfig",
    "DeploymentResult",
    "DiscoveredContainer",
    "HttpAppConfig",
    "MinioConfig",
    "PostgresConfig",
    "RedisConfig",
    "ResourceLimits",
    "ResourceUsage",
    "ScheduledTask",
    "ServiceConfig",
    "ServiceType",
    "TaskExecution",
    "TaskStatus",
    "TunnelHandle",
    "TunnelStatus",
    "Workload",
    "WorkloadStatus",
]
