"""Per-service container recipes.

Each recipe turns a workload's typed service config plus the host ports the
allocator handed out into a ``ContainerSpec`` the runtime adapter can create.
Missing credentials are generated here so they exist before the container
does.
"""

import secrets
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from lattice_agent.models.workloads import (
    CustomConfig,
    HttpAppConfig,
    MinioConfig,
    PostgresConfig,
    RedisConfig,
    ServiceType,
    Workload,
)

# Labels stamped on every container and volume the agent creates
LABEL_MANAGED = "lattice.managed"
LABEL_WORKLOAD_ID = "lattice.workload.id"
LABEL_SERVICE_TYPE = "lattice.service.type"
LABEL_INTERNAL_PORT = "lattice.internal.port"

MINIO_API_PORT = 9000
MINIO_CONSOLE_PORT = 9001
POSTGRES_PORT = 5432
REDIS_PORT = 6379


@dataclass
class ContainerSpec:
    """Everything needed to create one workload container."""

    workload_id: str
    service_type: ServiceType
    name: str
    image: str
    environment: Dict[str, str] = field(default_factory=dict)
    command: Optional[List[str]] = None
    # container port -> host port; the first entry is the primary binding
    port_bindings: Dict[int, int] = field(default_factory=dict)
    volume_name: Optional[str] = None
    volume_target: Optional[str] = None
    mem_limit: Optional[int] = None
    cpu_shares: Optional[int] = None
    credentials: Dict[str, str] = field(default_factory=dict)
    internal_port: Optional[int] = None
    restart_policy: Dict[str, str] = field(default_factory=lambda: {"Name": "unless-stopped"})

    @property
    def labels(self) -> Dict[str, str]:
        labels = {
            LABEL_MANAGED: "true",
            LABEL_WORKLOAD_ID: self.workload_id,
            LABEL_SERVICE_TYPE: self.service_type.value,
        }
        if self.internal_port is not None:
            labels[LABEL_INTERNAL_PORT] = str(self.internal_port)
        return labels

    @property
    def host_ports(self) -> List[int]:
        return list(self.port_bindings.values())

    @property
    def docker_ports(self) -> Dict[str, int]:
        """Port table in the Docker SDK's ``{"5432/tcp": 30001}`` form."""
        return {f"{container}/tcp": host for container, host in self.port_bindings.items()}


def generate_secret(nbytes: int = 18) -> str:
    """URL-safe random secret suitable for passwords and keys."""
    return secrets.token_urlsafe(nbytes)


def container_name(service_type: ServiceType, workload_id: str) -> str:
    return f"lattice-{service_type.value}-{workload_id}"


def volume_name(service_type: ServiceType, workload_id: str) -> str:
    return f"lattice-{service_type.value}-data-{workload_id}"


def ports_required(workload: Workload) -> int:
    """Number of host ports a workload's recipe binds."""
    if workload.type is ServiceType.MINIO:
        return 2
    if workload.type is ServiceType.CUSTOM and workload.config.port is None:
        return 0
    return 1


def tunnel_protocol(service_type: ServiceType) -> str:
    """Tunnel protocol a service needs: raw TCP for databases, HTTP otherwise."""
    if service_type in (ServiceType.POSTGRES, ServiceType.REDIS):
        return "tcp"
    return "http"


def _base_spec(workload: Workload, image: str) -> ContainerSpec:
    limits = workload.resources
    return ContainerSpec(
        workload_id=workload.id,
        service_type=workload.type,
        name=container_name(workload.type, workload.id),
        image=image,
        mem_limit=limits.memory_bytes or None,
        cpu_shares=limits.cpu_shares,
    )


def postgres_recipe(workload: Workload, ports: List[int]) -> ContainerSpec:
    config: PostgresConfig = workload.config
    username = config.username or "lattice"
    password = config.password or generate_secret()

    spec = _base_spec(workload, f"postgres:{config.version}")
    spec.environment = {
        "POSTGRES_DB": config.database,
        "POSTGRES_USER": username,
        "POSTGRES_PASSWORD": password,
    }
    spec.port_bindings = {POSTGRES_PORT: ports[0]}
    spec.internal_port = POSTGRES_PORT
    spec.volume_name = volume_name(workload.type, workload.id)
    spec.volume_target = "/var/lib/postgresql/data"
    spec.credentials = {"username": username, "password": password, "database": config.database}
    return spec


def redis_recipe(workload: Workload, ports: List[int]) -> ContainerSpec:
    config: RedisConfig = workload.config
    password = config.password or generate_secret()

    spec = _base_spec(workload, f"redis:{config.version}")
    spec.command = ["redis-server", "--requirepass", password, "--appendonly", "yes"]
    spec.port_bindings = {REDIS_PORT: ports[0]}
    spec.internal_port = REDIS_PORT
    spec.volume_name = volume_name(workload.type, workload.id)
    spec.volume_target = "/data"
    spec.credentials = {"password": password}
    return spec


def minio_recipe(workload: Workload, ports: List[int]) -> ContainerSpec:
    config: MinioConfig = workload.config
    access_key = config.access_key or f"lattice{secrets.token_hex(4)}"
    secret_key = config.secret_key or generate_secret(24)

    spec = _base_spec(workload, f"minio/minio:{config.version}")
    spec.command = ["server", "/data", "--console-address", f":{MINIO_CONSOLE_PORT}"]
    spec.environment = {
        "MINIO_ROOT_USER": access_key,
        "MINIO_ROOT_PASSWORD": secret_key,
    }
    spec.port_bindings = {MINIO_API_PORT: ports[0], MINIO_CONSOLE_PORT: ports[1]}
    spec.internal_port = MINIO_API_PORT
    spec.volume_name = volume_name(workload.type, workload.id)
    spec.volume_target = "/data"
    spec.credentials = {"accessKey": access_key, "secretKey": secret_key}
    return spec


def http_app_recipe(workload: Workload, ports: List[int]) -> ContainerSpec:
    config: HttpAppConfig = workload.config

    spec = _base_spec(workload, config.image)
    spec.environment = {**config.env, "PORT": str(config.port)}
    spec.command = config.command
    spec.port_bindings = {config.port: ports[0]}
    spec.internal_port = config.port
    return spec


def custom_recipe(workload: Workload, ports: List[int]) -> ContainerSpec:
    config: CustomConfig = workload.config

    spec = _base_spec(workload, config.image)
    spec.environment = dict(config.env)
    spec.command = config.command
    if config.port is not None:
        spec.environment.setdefault("PORT", str(config.port))
        spec.port_bindings = {config.port: ports[0]}
        spec.internal_port = config.port
    return spec


RECIPES: Dict[ServiceType, Callable[[Workload, List[int]], ContainerSpec]] = {
    ServiceType.POSTGRES: postgres_recipe,
    ServiceType.REDIS: redis_recipe,
    ServiceType.MINIO: minio_recipe,
    ServiceType.HTTP_APP: http_app_recipe,
    ServiceType.CUSTOM: custom_recipe,
}


def build_container_spec(workload: Workload, ports: List[int]) -> ContainerSpec:
    """
    Build the creation spec for a workload.

    Args:
        workload: Desired workload
        ports: Host ports from the allocator, at least ``ports_required(workload)``

    Returns:
        Container spec for the runtime adapter
    """
    needed = ports_required(workload)
    if len(ports) < needed:
        raise ValueError(f"{workload.type.value} needs {needed} host ports, got {len(ports)}")
    return RECIPES[workload.type](workload, ports)


def recover_credentials(
    service_type: ServiceType, environment: List[str], command: Optional[List[str]]
) -> Dict[str, str]:
    """
    Read a service's credentials back from a container's configuration.

    The inverse of the recipes above, for containers found at startup.

    Args:
        service_type: Service the container runs
        environment: ``KEY=value`` entries from the container config
        command: Container command, if any

    Returns:
        Credentials in the shape the recipe reported them, empty when none
    """
    env = dict(entry.split("=", 1) for entry in environment or [] if "=" in entry)

    if service_type is ServiceType.POSTGRES:
        fields = {"username": "POSTGRES_USER", "password": "POSTGRES_PASSWORD", "database": "POSTGRES_DB"}
    elif service_type is ServiceType.MINIO:
        fields = {"accessKey": "MINIO_ROOT_USER", "secretKey": "MINIO_ROOT_PASSWORD"}
    elif service_type is ServiceType.REDIS:
        command = list(command or [])
        if "--requirepass" in command:
            index = command.index("--requirepass")
            if index + 1 < len(command):
                return {"password": command[index + 1]}
        return {}
    else:
        return {}

    return {key: env[name] for key, name in fields.items() if name in env}
