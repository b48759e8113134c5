"""Agent interface for executing one requested step."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from build_factory.engine.models import AgentResponse


@dataclass(slots=True)
class AgentRequest:
    """Everything an agent needs to execute one step.

    ``steps_dir`` holds per-step inputs and logs. It defaults to a hidden
    directory inside ``workdir``.
    """

    goal_id: str
    workflow_id: str
    step_id: str
    run_id: str
    work_kind: str
    workdir: Path
    payload: dict[str, Any] = field(default_factory=dict)
    steps_dir: Path | None = None


@dataclass(slots=True)
class AgentContext:
    """Shared services handed to an agent factory."""

    api_keys: dict[str, str]
    config: dict[str, Any]
    storage: Any = None
    logger: Any = None


class Agent(Protocol):
    """Executes one step and maps the outcome onto an ``AgentResponse``."""

    name: str

    def execute(self, request: AgentRequest) -> AgentResponse:
        """Run the step. Raises ``RateLimitedError`` or ``BackendRunError`` on failure."""


class AgentFactory(Protocol):
    """Registry entry that builds an agent for the work kinds it supports."""

    name: str

    def supports(self, work_kind: str) -> bool: ...

    def create(self, context: AgentContext) -> Agent: ...
