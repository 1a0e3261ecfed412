"""Settings and configuration management for the Lattice agent."""

from functools import lru_cache
from typing import List, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LATTICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Docker configuration
    docker_host: str | None = Field(
        default=None,
        description="Docker daemon host URL or socket path (defaults to Docker's standard detection)",
    )

    network_name: str = Field(
        default="lattice",
        description="Bridge network every workload container is attached to",
    )

    pull_base_images: bool = Field(
        default=False,
        description="Pull the base service images when the agent starts",
    )

    base_images: str = Field(
        default="postgres:15,redis:7,minio/minio:latest",
        description="Comma-separated list of images pulled at startup",
    )

    # Control plane configuration
    control_plane_url: str = Field(
        default="http://localhost:3001",
        description="Base URL of the control plane API",
    )

    agent_secret: str = Field(
        default="",
        description="Shared secret presented when registering the agent",
    )

    agent_hostname: str | None = Field(
        default=None,
        description="Hostname reported at registration (defaults to the machine hostname)",
    )

    control_plane_timeout_s: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for a single control plane call",
    )

    # Tunnel configuration
    tunnel_provider: Literal["cloudflared", "ngrok", "localtunnel", "none"] = Field(
        default="cloudflared",
        description="External tunnel provider used to expose workloads",
    )

    tunnel_binary: str | None = Field(
        default=None,
        description="Path to the tunnel provider executable (defaults to the provider's binary name)",
    )

    tunnel_url_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for a tunnel process to print its public URL",
    )

    ngrok_authtoken: str | None = Field(
        default=None,
        description="Auth token passed to ngrok",
    )

    # Port allocation
    port_range_min: int = Field(
        default=30000,
        ge=1,
        le=65535,
        description="Lowest host port handed out to workloads",
    )

    port_range_max: int = Field(
        default=40000,
        ge=1,
        le=65535,
        description="Highest host port handed out to workloads",
    )

    # Loop cadence
    reconcile_interval_s: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between reconciliation passes",
    )

    heartbeat_interval_s: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between heartbeats",
    )

    shutdown_timeout_s: float = Field(
        default=30.0,
        gt=0,
        description="Overall window for tearing down workloads on shutdown",
    )

    readiness_timeout_s: float = Field(
        default=60.0,
        gt=0,
        description="Seconds a fresh container has to pass its readiness probe",
    )

    readiness_interval_s: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between readiness probe attempts",
    )

    max_concurrent_operations: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum deploy/teardown sequences running at once",
    )

    runtime_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed runtime checks before pending workloads are marked error",
    )

    # Scheduled tasks
    cron_default_timeout_s: float = Field(
        default=300.0,
        gt=0,
        description="Default hard timeout for a scheduled command",
    )

    cron_history_limit: int = Field(
        default=100,
        ge=1,
        description="Executions kept per scheduled task",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    # Metrics
    metrics_port: int = Field(
        default=0,
        ge=0,
        le=65535,
        description="Port for the Prometheus metrics endpoint (0 disables it)",
    )

    @model_validator(mode="after")
    def _check_port_range(self) -> "Settings":
        if self.port_range_min > self.port_range_max:
            raise ValueError(
                f"port_range_min ({self.port_range_min}) must not exceed "
                f"port_range_max ({self.port_range_max})"
            )
        return self

    @property
    def base_images_list(self) -> List[str]:
        """Parse base images into a list."""
        return [i.strip() for i in self.base_images.split(",") if i.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
