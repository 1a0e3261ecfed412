"""Agent-local records of deployed workloads."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .workloads import ServiceType, WorkloadStatus


@dataclass
class DeploymentResult:
    """What the runtime adapter hands back after a successful deploy."""

    container_id: str
    assigned_port: Optional[int]
    internal_port: Optional[int]
    extra_ports: List[int] = field(default_factory=list)
    credentials: Dict[str, str] = field(default_factory=dict)


@dataclass
class ActiveDeployment:
    """The agent's record of a workload it currently manages."""

    workload_id: str
    service_type: ServiceType
    container_id: str
    host_ports: List[int]
    internal_port: Optional[int] = None
    tunnel_id: Optional[str] = None
    public_url: Optional[str] = None
    status: WorkloadStatus = WorkloadStatus.RUNNING
    credentials: Dict[str, str] = field(default_factory=dict)
    rediscovered: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def primary_port(self) -> Optional[int]:
        """Host port the service is reachable on, if any."""
        return self.host_ports[0] if self.host_ports else None

    def __repr__(self) -> str:
        # credentials deliberately omitted
        return (
            f"<ActiveDeployment(workload_id={self.workload_id}, type={self.service_type.value}, "
            f"container_id={self.container_id}, ports={self.host_ports}, status={self.status.value})>"
        )


@dataclass
class DiscoveredContainer:
    """A managed container found on the runtime at startup."""

    workload_id: str
    service_type: ServiceType
    container_id: str
    status: str
    host_ports: List[int]
    internal_port: Optional[int] = None
    credentials: Dict[str, str] = field(default_factory=dict, repr=False)


@dataclass
class ResourceUsage:
    """Point-in-time resource sample reported in heartbeats."""

    cpu_percent: float = 0.0
    memory_bytes: int = 0
    disk_bytes: int = 0
    available_memory_bytes: int = 0
    available_disk_bytes: int = 0
    container_count: int = 0

    def to_dict(self) -> Dict:
        """Convert to the control plane's camelCase payload."""
        return {
            "cpuPercent": round(self.cpu_percent, 2),
            "memoryBytes": self.memory_bytes,
            "diskBytes": self.disk_bytes,
            "availableMemory": self.available_memory_bytes,
            "availableDisk": self.available_disk_bytes,
            "containerCount": self.container_count,
        }
