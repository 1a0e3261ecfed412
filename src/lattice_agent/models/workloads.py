"""Workload desired-state models received from the control plane."""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ServiceType(str, Enum):
    """Kinds of service the agent knows how to run."""

    POSTGRES = "postgres"
    REDIS = "redis"
    MINIO = "minio"
    HTTP_APP = "http-app"
    CUSTOM = "custom"


class WorkloadStatus(str, Enum):
    """Workload lifecycle states shared with the control plane."""

    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class _WireModel(BaseModel):
    """Base for models parsed from camelCase control plane JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ResourceLimits(_WireModel):
    """Resource caps applied to a workload container."""

    cpu_cores: float = Field(default=1.0, gt=0, description="Requested CPU cores")
    memory_bytes: int = Field(default=512 * 1024 * 1024, ge=0, description="Memory ceiling (0 = unlimited)")
    disk_bytes: int = Field(default=0, ge=0, description="Disk quota (0 = unlimited)")

    @property
    def cpu_shares(self) -> int:
        """Docker CPU shares proportional to the requested cores."""
        return max(2, int(self.cpu_cores * 1024))


class PostgresConfig(_WireModel):
    """Postgres service configuration."""

    type: Literal["postgres"] = "postgres"
    version: str = Field(default="15", description="postgres image tag")
    database: str = Field(default="app", min_length=1)
    username: Optional[str] = Field(None, description="Generated when omitted")
    password: Optional[str] = Field(None, description="Generated when omitted")


class RedisConfig(_WireModel):
    """Redis service configuration."""

    type: Literal["redis"] = "redis"
    version: str = Field(default="7", description="redis image tag")
    password: Optional[str] = Field(None, description="Generated when omitted")


class MinioConfig(_WireModel):
    """MinIO service configuration."""

    type: Literal["minio"] = "minio"
    version: str = Field(default="latest", description="minio/minio image tag")
    access_key: Optional[str] = Field(None, description="Generated when omitted")
    secret_key: Optional[str] = Field(None, description="Generated when omitted")
    buckets: List[str] = Field(default_factory=list)


class HttpAppConfig(_WireModel):
    """Generic HTTP application built from a user image."""

    type: Literal["http-app"] = "http-app"
    image: str = Field(..., min_length=1, description="Image reference to run")
    env: Dict[str, str] = Field(default_factory=dict)
    port: int = Field(default=8000, ge=1, le=65535, description="Port the app listens on")
    health_path: str = Field(default="/health")
    command: Optional[List[str]] = None


class CustomConfig(_WireModel):
    """Arbitrary container; exposed only when a port is given."""

    type: Literal["custom"] = "custom"
    image: str = Field(..., min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    port: Optional[int] = Field(None, ge=1, le=65535)
    health_path: Optional[str] = None
    command: Optional[List[str]] = None


ServiceConfig = Annotated[
    Union[PostgresConfig, RedisConfig, MinioConfig, HttpAppConfig, CustomConfig],
    Field(discriminator="type"),
]


class CronJobSpec(_WireModel):
    """A scheduled command attached to a workload."""

    name: str = Field(default="job")
    schedule: str
    command: str = Field(..., min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_s: Optional[float] = Field(None, gt=0)


class Workload(_WireModel):
    """Desired state of one workload as assigned by the control plane."""

    id: str = Field(..., min_length=1)
    type: ServiceType
    status: WorkloadStatus
    resources: ResourceLimits = Field(default_factory=ResourceLimits)
    config: ServiceConfig
    cron_jobs: List[CronJobSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _tag_config(cls, data: Any) -> Any:
        # The control plane sends config without a type tag; borrow the workload's.
        if isinstance(data, dict):
            config = data.get("config")
            workload_type = data.get("type")
            if workload_type is not None and hasattr(workload_type, "value"):
                workload_type = workload_type.value
            if config is None:
                config = {}
            if isinstance(config, dict) and "type" not in config and workload_type:
                data = {**data, "config": {**config, "type": workload_type}}
        return data

    @model_validator(mode="after")
    def _check_config_type(self) -> "Workload":
        if self.config.type != self.type.value:
            raise ValueError(
                f"config type '{self.config.type}' does not match workload type '{self.type.value}'"
            )
        return self
