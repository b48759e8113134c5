"""Builders shared by test modules."""

from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

from build_factory.config import AgentSettings, OrchestratorSettings, Settings
from build_factory.engine.models import TransitionContext

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m build_factory.agents.echo_agent "
    "--task-manifest {task_manifest} --prompt-file {prompt_file}"
)

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def make_context(offset_ms: int = 0, random: float = 0.25) -> TransitionContext:
    return TransitionContext(now=BASE_TIME + timedelta(milliseconds=offset_ms), random=random)


def fast_settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "factory.db",
        workspace_root=tmp_path / "workspace",
        orchestrator=OrchestratorSettings(
            max_concurrent=2,
            worker_pool_size=4,
            build_retry_base_seconds=0,
            poll_interval_seconds=0.01,
        ),
        agent=AgentSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            model="echo",
            timeout_seconds=60,
        ),
    )
