"""Tests for logging setup."""

import json
import logging

import pytest

from lattice_agent.utils import get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_output_carries_extra_fields(capsys):
    """Test JSON records include level, service and extra keys."""
    setup_logging("INFO", "json")

    get_logger("lattice_agent.test").info("Workload running", extra={"workload_id": "wl-1"})

    record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert record["message"] == "Workload running"
    assert record["level"] == "INFO"
    assert record["service"] == "lattice-agent"
    assert record["workload_id"] == "wl-1"


def test_text_output_and_level_filter(capsys):
    """Test text format and that records below the level are dropped."""
    setup_logging("warning", "text")
    logger = get_logger("lattice_agent.test")

    logger.info("hidden")
    logger.warning("shown")

    out = capsys.readouterr().out
    assert "hidden" not in out
    assert "WARNING - shown" in out


def test_unknown_level():
    """Test that a misspelt level is rejected."""
    with pytest.raises(ValueError):
        setup_logging("LOUD")


def test_third_party_loggers_quieted():
    """Test that chatty client libraries stay at WARNING under DEBUG."""
    setup_logging("DEBUG", "text")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("docker").level == logging.WARNING
