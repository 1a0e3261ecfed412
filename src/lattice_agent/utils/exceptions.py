"""Custom exceptions for the Lattice agent."""


class LatticeAgentError(Exception):
    """Base exception for Lattice agent errors."""

    pass


class ValidationFailure(LatticeAgentError):
    """Base exception for configuration rejected before any side effect."""

    pass


class InvalidScheduleError(ValidationFailure):
    """Exception raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        """
        Initialize InvalidScheduleError.

        Args:
            expression: The rejected cron expression
            reason: Why it was rejected
        """
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid cron schedule '{expression}': {reason}")


class InvalidWorkloadConfigError(ValidationFailure):
    """Exception raised when a workload's service config is unusable."""

    def __init__(self, workload_id: str, reason: str) -> None:
        """
        Initialize InvalidWorkloadConfigError.

        Args:
            workload_id: Workload whose config is invalid
            reason: Validation message
        """
        self.workload_id = workload_id
        self.reason = reason
        super().__init__(f"Invalid config for workload {workload_id}: {reason}")


class ResourceExhaustedError(LatticeAgentError):
    """Exception raised when no host port is free in the configured range."""

    def __init__(self, range_min: int, range_max: int) -> None:
        """
        Initialize ResourceExhaustedError.

        Args:
            range_min: Lower bound of the port range
            range_max: Upper bound of the port range
        """
        self.range_min = range_min
        self.range_max = range_max
        super().__init__(f"No free port available in range {range_min}-{range_max}")


class RuntimeUnavailableError(LatticeAgentError):
    """Exception raised when the container runtime daemon is unreachable."""

    def __init__(
        self,
        message: str = "Container runtime is unreachable",
        original_error: Exception | None = None,
    ) -> None:
        """
        Initialize RuntimeUnavailableError.

        Args:
            message: Error message
            original_error: Original exception from the Docker SDK
        """
        self.original_error = original_error
        super().__init__(message)


class DeploymentFailedError(LatticeAgentError):
    """Exception raised when a container could not be created or started."""

    def __init__(
        self, workload_id: str, reason: str, original_error: Exception | None = None
    ) -> None:
        """
        Initialize DeploymentFailedError.

        Args:
            workload_id: Workload being deployed
            reason: Human-readable failure reason
            original_error: Original exception from the Docker SDK
        """
        self.workload_id = workload_id
        self.reason = reason
        self.original_error = original_error
        super().__init__(f"Deployment of workload {workload_id} failed: {reason}")


class ReadinessTimeoutError(LatticeAgentError):
    """Exception raised when a container never passes its readiness probe."""

    def __init__(self, service_type: str, timeout_s: float) -> None:
        """
        Initialize ReadinessTimeoutError.

        Args:
            service_type: Service type being probed
            timeout_s: Timeout that elapsed
        """
        self.service_type = service_type
        self.timeout_s = timeout_s
        super().__init__(f"{service_type} did not become ready within {timeout_s:g} seconds")


class TunnelError(LatticeAgentError):
    """Exception raised when a tunnel could not be established."""

    def __init__(self, port: int, reason: str) -> None:
        """
        Initialize TunnelError.

        Args:
            port: Local port the tunnel was meant to expose
            reason: Failure reason
        """
        self.port = port
        self.reason = reason
        super().__init__(f"Tunnel for port {port} failed: {reason}")


class TunnelNotFoundError(LatticeAgentError):
    """Exception raised when a tunnel id is unknown."""

    def __init__(self, tunnel_id: str) -> None:
        self.tunnel_id = tunnel_id
        super().__init__(f"Tunnel not found: {tunnel_id}")


class TaskNotFoundError(LatticeAgentError):
    """Exception raised when a scheduled task id is unknown."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Scheduled task not found: {task_id}")


class ControlPlaneError(LatticeAgentError):
    """Exception raised when a control plane call fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        """
        Initialize ControlPlaneError.

        Args:
            message: Error message
            status_code: HTTP status code when a response was received
            original_error: Original exception from httpx
        """
        self.status_code = status_code
        self.original_error = original_error
        super().__init__(message)


class ControlPlaneUnreachableError(ControlPlaneError):
    """Exception raised when the control plane cannot be reached at all."""

    def __init__(self, operation: str, original_error: Exception | None = None) -> None:
        """
        Initialize ControlPlaneUnreachableError.

        Args:
            operation: Name of the API operation that failed
            original_error: Original transport exception
        """
        self.operation = operation
        super().__init__(
            f"Control plane unreachable during {operation}: {original_error}",
            original_error=original_error,
        )


class ControlPlaneAuthError(ControlPlaneError):
    """Exception raised when the control plane rejects the agent's credentials."""

    def __init__(self, operation: str, status_code: int) -> None:
        """
        Initialize ControlPlaneAuthError.

        Args:
            operation: Name of the API operation that was rejected
            status_code: HTTP status code returned
        """
        self.operation = operation
        super().__init__(
            f"Control plane rejected credentials during {operation} (HTTP {status_code})",
            status_code=status_code,
        )
