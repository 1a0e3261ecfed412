"""Test configuration and fixtures."""

import itertools
import os
import stat
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from docker.errors import NotFound

from lattice_agent.config import Settings
from lattice_agent.managers.container_manager import ContainerManager
from lattice_agent.models.deployments import DeploymentResult, ResourceUsage
from lattice_agent.models.workloads import Workload
from lattice_agent.utils.metrics_collector import MetricsCollector


@pytest.fixture
def settings():
    """Settings with a small port range and fast timeouts."""
    return Settings(
        _env_file=None,
        port_range_min=30000,
        port_range_max=30009,
        tunnel_provider="none",
        readiness_timeout_s=1.0,
        readiness_interval_s=0.01,
        reconcile_interval_s=0.05,
        heartbeat_interval_s=0.05,
        shutdown_timeout_s=5.0,
        runtime_failure_threshold=3,
        max_concurrent_operations=4,
    )


@pytest.fixture
def metrics():
    """Metrics collector on a private registry."""
    return MetricsCollector()


@pytest.fixture
def mock_docker_client():
    """Create mock Docker client."""
    return MagicMock()


@pytest.fixture
def container_manager(settings, mock_docker_client):
    """ContainerManager wired to a mock Docker client."""
    docker_manager = MagicMock()
    docker_manager.get_client.return_value = mock_docker_client
    return ContainerManager(settings, docker_manager)


@pytest.fixture
def stateful_docker_client():
    """Docker mock that remembers created containers so label listings reflect them."""
    client = MagicMock()
    store = {}
    ids = itertools.count(1)

    def create(**kwargs):
        container = MagicMock()
        container.id = f"docker-{next(ids)}"
        container.name = kwargs["name"]
        container.labels = dict(kwargs.get("labels") or {})
        container.status = "created"
        container.attrs = {}
        container.start.side_effect = lambda: setattr(container, "status", "running")
        container.remove.side_effect = lambda force=False: store.pop(container.id, None)
        store[container.id] = container
        return container

    def get(key):
        for container in store.values():
            if key in (container.id, container.name):
                return container
        raise NotFound(f"No such container: {key}")

    def list_containers(**kwargs):
        wanted = (kwargs.get("filters") or {}).get("label", [])
        if isinstance(wanted, str):
            wanted = [wanted]
        pairs = [label.split("=", 1) for label in wanted]
        return [
            c for c in store.values() if all(c.labels.get(key) == value for key, value in pairs)
        ]

    client.containers.create.side_effect = create
    client.containers.get.side_effect = get
    client.containers.list.side_effect = list_containers
    return client


@pytest.fixture
def mock_runtime():
    """Fully mocked runtime adapter for reconciler tests."""
    runtime = MagicMock(spec=ContainerManager)
    runtime.is_available = AsyncMock(return_value=True)
    runtime.remove = AsyncMock()
    runtime.stop = AsyncMock()
    runtime.remove_volumes = AsyncMock(return_value=0)
    runtime.status = AsyncMock(return_value="running")
    runtime.create_buckets = AsyncMock()
    runtime.discover = AsyncMock(return_value=[])
    runtime.resource_usage = AsyncMock(return_value=ResourceUsage(container_count=1))

    counter = {"n": 0}

    async def deploy(spec):
        counter["n"] += 1
        host_ports = spec.host_ports
        return DeploymentResult(
            container_id=f"docker-{counter['n']}",
            assigned_port=host_ports[0] if host_ports else None,
            internal_port=spec.internal_port,
            extra_ports=host_ports[1:],
            credentials=dict(spec.credentials),
        )

    runtime.deploy = AsyncMock(side_effect=deploy)
    return runtime


@pytest.fixture
def make_workload():
    """Factory for workloads in control plane wire format."""

    def _make(workload_id="wl-1", type="postgres", status="provisioning", config=None, **extra):
        payload = {"id": workload_id, "type": type, "status": status, "config": config or {}}
        payload.update(extra)
        return Workload.model_validate(payload)

    return _make


@pytest.fixture
def write_script(tmp_path):
    """Write an executable ``sh`` script and return its path."""

    def _write(name: str, body: str) -> str:
        path = Path(tmp_path) / name
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
        return os.fspath(path)

    return _write
