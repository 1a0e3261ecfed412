"""Docker client utilities for the Lattice agent."""

import docker
from docker import DockerClient
from docker.errors import DockerException

from lattice_agent.config import Settings
from lattice_agent.utils import get_logger
from lattice_agent.utils.exceptions import RuntimeUnavailableError

logger = get_logger(__name__)


class DockerClientManager:
    """Owns the agent's single Docker client connection."""

    def __init__(self, settings: Settings) -> None:
        """
        Initialize Docker client manager.

        Args:
            settings: Agent settings (docker_host selects the daemon)
        """
        self._client: DockerClient | None = None
        self.settings = settings

    def get_client(self) -> DockerClient:
        """
        Get or create Docker client instance.

        Returns:
            DockerClient instance

        Raises:
            RuntimeUnavailableError: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                if self.settings.docker_host:
                    base_url = self.settings.docker_host
                    if base_url.startswith("/"):
                        base_url = f"unix://{base_url}"
                    client = docker.DockerClient(base_url=base_url)
                else:
                    client = docker.from_env()

                client.ping()
                logger.info(
                    "Successfully connected to Docker daemon",
                    extra={"docker_version": client.version().get("Version")},
                )
                self._client = client
            except DockerException as e:
                logger.error("Failed to connect to Docker daemon", extra={"error": str(e)})
                raise RuntimeUnavailableError(f"Failed to connect to Docker daemon: {e}", e)

        return self._client

    def close(self) -> None:
        """Close Docker client connection."""
        if self._client:
            self._client.close()
            self._client = None
            logger.info("Docker client connection closed")
