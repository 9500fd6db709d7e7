"""Outbound integrations: HTTP transport and agent providers."""

from .http import HttpTransport
from .agents import AgentClient

__all__ = ["HttpTransport", "AgentClient"]
