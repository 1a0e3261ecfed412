"""Prometheus metrics collection for the Lattice agent."""

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for agent operations."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize metrics collector with all metrics.

        Args:
            registry: Registry to register into; a private one is created by default
        """
        self.registry = registry or CollectorRegistry()

        # Counter metrics
        self.deployments_total = Counter(
            "lattice_agent_deployments_total",
            "Total number of workload deployments",
            ["service_type", "outcome"],
            registry=self.registry,
        )

        self.teardowns_total = Counter(
            "lattice_agent_teardowns_total",
            "Total number of workload teardowns",
            ["outcome"],
            registry=self.registry,
        )

        self.tunnel_opens_total = Counter(
            "lattice_agent_tunnel_opens_total",
            "Total number of tunnel open attempts",
            ["provider", "outcome"],
            registry=self.registry,
        )

        self.task_runs_total = Counter(
            "lattice_agent_task_runs_total",
            "Total number of scheduled task executions",
            ["outcome"],
            registry=self.registry,
        )

        self.control_plane_failures_total = Counter(
            "lattice_agent_control_plane_failures_total",
            "Total number of failed control plane calls",
            ["operation"],
            registry=self.registry,
        )

        # Histogram metrics
        self.deploy_duration_seconds = Histogram(
            "lattice_agent_deploy_duration_seconds",
            "Duration of the full deploy sequence in seconds",
            buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
            registry=self.registry,
        )

        # Gauge metrics
        self.active_deployments = Gauge(
            "lattice_agent_active_deployments",
            "Number of workloads currently managed by this agent",
            registry=self.registry,
        )

        self.open_tunnels = Gauge(
            "lattice_agent_open_tunnels",
            "Number of tunnel processes currently supervised",
            registry=self.registry,
        )

        self.allocated_ports = Gauge(
            "lattice_agent_allocated_ports",
            "Number of host ports currently allocated",
            registry=self.registry,
        )

    def record_deployment(self, service_type: str, outcome: str) -> None:
        """
        Record a deployment attempt.

        Args:
            service_type: Workload service type
            outcome: running, degraded or error
        """
        self.deployments_total.labels(service_type=service_type, outcome=outcome).inc()

    def record_deploy_duration(self, duration_seconds: float) -> None:
        self.deploy_duration_seconds.observe(duration_seconds)

    def record_teardown(self, outcome: str) -> None:
        self.teardowns_total.labels(outcome=outcome).inc()

    def record_tunnel_open(self, provider: str, outcome: str) -> None:
        self.tunnel_opens_total.labels(provider=provider, outcome=outcome).inc()

    def record_task_run(self, outcome: str) -> None:
        self.task_runs_total.labels(outcome=outcome).inc()

    def record_control_plane_failure(self, operation: str) -> None:
        self.control_plane_failures_total.labels(operation=operation).inc()

    def set_active_deployments(self, count: int) -> None:
        self.active_deployments.set(count)

    def set_open_tunnels(self, count: int) -> None:
        self.open_tunnels.set(count)

    def set_allocated_ports(self, count: int) -> None:
        self.allocated_ports.set(count)

    def serve(self, port: int) -> None:
        """
        Expose metrics over HTTP.

        Args:
            port: TCP port for the metrics endpoint
        """
        start_http_server(port, registry=self.registry)

    def get_metrics(self) -> bytes:
        """
        Get current metrics in Prometheus format.

        Returns:
            Metrics data in bytes
        """
        return generate_latest(self.registry)
