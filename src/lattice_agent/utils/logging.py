"""Logging utilities for the Lattice agent."""

import logging
import sys

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that flood DEBUG output with per-request lines
QUIET_LOGGERS = ("urllib3", "docker", "httpx", "httpcore")


def _resolve_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    return level


def build_formatter(log_format: str = "json") -> logging.Formatter:
    """
    Build the formatter for agent output.

    JSON records carry the agent name and version so that logs shipped from
    many hosts can be told apart; ``extra={...}`` fields become top-level keys.

    Args:
        log_format: ``json`` or ``text``
    """
    if log_format.lower() != "json":
        return logging.Formatter(TEXT_FORMAT)

    from lattice_agent import __version__

    return jsonlogger.JsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "asctime": "timestamp"},
        static_fields={"service": "lattice-agent", "version": __version__},
        timestamp=True,
    )


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """
    Setup structured logging for the agent.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Format type (json or text)

    Raises:
        ValueError: If the level name is unknown
    """
    level = _resolve_level(log_level)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(build_formatter(log_format))
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance, typically for ``__name__``."""
    return logging.getLogger(name)
