"""Tests for agent settings."""

import pytest
from pydantic import ValidationError

from lattice_agent.config import Settings


def test_defaults(monkeypatch):
    """Test default values."""
    for key in ("LATTICE_PORT_RANGE_MIN", "LATTICE_PORT_RANGE_MAX", "LATTICE_TUNNEL_PROVIDER"):
        monkeypatch.delenv(key, raising=False)

    settings = Settings(_env_file=None)

    assert settings.port_range_min == 30000
    assert settings.port_range_max == 40000
    assert settings.tunnel_provider == "cloudflared"
    assert settings.reconcile_interval_s == 10.0
    assert settings.heartbeat_interval_s == 30.0
    assert settings.cron_history_limit == 100
    assert settings.cron_default_timeout_s == 300.0


def test_env_prefix(monkeypatch):
    """Test LATTICE_ environment variables are read."""
    monkeypatch.setenv("LATTICE_CONTROL_PLANE_URL", "https://cp.example.com")
    monkeypatch.setenv("LATTICE_TUNNEL_PROVIDER", "ngrok")
    monkeypatch.setenv("LATTICE_MAX_CONCURRENT_OPERATIONS", "8")

    settings = Settings(_env_file=None)

    assert settings.control_plane_url == "https://cp.example.com"
    assert settings.tunnel_provider == "ngrok"
    assert settings.max_concurrent_operations == 8


def test_port_range_order():
    """Test that an inverted port range is rejected."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, port_range_min=40000, port_range_max=30000)


def test_unknown_tunnel_provider():
    """Test that tunnel provider is restricted to known names."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, tunnel_provider="wireguard")


@pytest.mark.parametrize("value", [0, 33])
def test_worker_pool_bounds(value):
    """Test max_concurrent_operations bounds."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_concurrent_operations=value)


def test_base_images_list():
    """Test base image parsing."""
    settings = Settings(_env_file=None, base_images="postgres:15, redis:7 ,,")
    assert settings.base_images_list == ["postgres:15", "redis:7"]
