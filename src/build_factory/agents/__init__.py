"""Agents that execute requested steps."""

from build_factory.agents.base import Agent, AgentContext, AgentFactory, AgentRequest
from build_factory.agents.cli_agent import CliAgent, CliAgentFactory
from build_factory.agents.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "Agent",
    "AgentContext",
    "AgentFactory",
    "AgentRequest",
    "BackendRunError",
    "CliAgent",
    "CliAgentBackend",
    "CliAgentFactory",
]
