"""Clients for services the agent talks to."""

from .control_plane import AgentRegistration, AssignedWorkloads, ControlPlaneClient

__all__ = ["AgentRegistration", "AssignedWorkloads", "ControlPlaneClient"]
