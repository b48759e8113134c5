"""Runtime configuration for the build factory."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p --model {model} --permission-mode acceptEdits -- {prompt}"


class ConflictPolicy(str, Enum):
    """What the worktree manager does after the first merge conflict."""

    REPORT = "report"
    ABORT = "abort"


@dataclass(slots=True)
class OrchestratorSettings:
    """Continuous build orchestrator settings."""

    max_concurrent: int = 4
    worker_pool_size: int = 8
    max_build_retries: int = 3
    build_retry_base_seconds: int = 60
    builds_per_run: int = 100
    max_run_seconds: int = 86_400
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class SpecSettings:
    """Decision policy limits."""

    max_attempts: int = 3
    max_quality_fixes: int = 3


@dataclass(slots=True)
class ProviderSettings:
    """Rate-limit backoff settings."""

    retry_delay_ceiling_seconds: int | None = None
    retry_buffer_seconds: int = 5
    default_retry_delay_seconds: int = 35


@dataclass(slots=True)
class WorktreeSettings:
    """Parallel worktree settings."""

    conflict_policy: ConflictPolicy = ConflictPolicy.REPORT
    delete_branches: bool = True
    git_timeout_seconds: int = 120
    max_parallel_tasks: int = 4


@dataclass(slots=True)
class AgentSettings:
    """CLI agent invocation settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    model: str = "sonnet"
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 30


@dataclass(slots=True)
class RegistrySettings:
    """Package registry collaborator settings."""

    index_url: str = "https://pypi.org/pypi"
    publish_command_template: str = ""
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".build_factory.db")
    workspace_root: Path = Path("workspace")
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    spec: SpecSettings = field(default_factory=SpecSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    worktree: WorktreeSettings = field(default_factory=WorktreeSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        ceiling = os.getenv("BUILD_FACTORY_RETRY_DELAY_CEILING_SECONDS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("BUILD_FACTORY_DB_PATH", ".build_factory.db")),
            workspace_root=Path(os.getenv("BUILD_FACTORY_WORKSPACE_ROOT", "workspace")),
            orchestrator=OrchestratorSettings(
                max_concurrent=int(os.getenv("BUILD_FACTORY_MAX_CONCURRENT", "4")),
                worker_pool_size=int(os.getenv("BUILD_FACTORY_WORKER_POOL_SIZE", "8")),
                max_build_retries=int(os.getenv("BUILD_FACTORY_MAX_BUILD_RETRIES", "3")),
                build_retry_base_seconds=int(
                    os.getenv("BUILD_FACTORY_BUILD_RETRY_BASE_SECONDS", "60"),
                ),
                builds_per_run=int(os.getenv("BUILD_FACTORY_BUILDS_PER_RUN", "100")),
                max_run_seconds=int(os.getenv("BUILD_FACTORY_MAX_RUN_SECONDS", "86400")),
                poll_interval_seconds=float(
                    os.getenv("BUILD_FACTORY_POLL_INTERVAL_SECONDS", "1.0"),
                ),
            ),
            spec=SpecSettings(
                max_attempts=int(os.getenv("BUILD_FACTORY_SPEC_MAX_ATTEMPTS", "3")),
                max_quality_fixes=int(os.getenv("BUILD_FACTORY_MAX_QUALITY_FIXES", "3")),
            ),
            provider=ProviderSettings(
                retry_delay_ceiling_seconds=int(ceiling) if ceiling else None,
                retry_buffer_seconds=int(os.getenv("BUILD_FACTORY_RETRY_BUFFER_SECONDS", "5")),
                default_retry_delay_seconds=int(
                    os.getenv("BUILD_FACTORY_DEFAULT_RETRY_DELAY_SECONDS", "35"),
                ),
            ),
            worktree=WorktreeSettings(
                conflict_policy=_env_conflict_policy(),
                delete_branches=_env_bool("BUILD_FACTORY_DELETE_WORKTREE_BRANCHES", default=True),
                git_timeout_seconds=int(os.getenv("BUILD_FACTORY_GIT_TIMEOUT_SECONDS", "120")),
                max_parallel_tasks=int(os.getenv("BUILD_FACTORY_MAX_PARALLEL_TASKS", "4")),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "BUILD_FACTORY_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("BUILD_FACTORY_AGENT_MODEL", "sonnet"),
                timeout_seconds=int(os.getenv("BUILD_FACTORY_AGENT_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("BUILD_FACTORY_AGENT_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
            ),
            registry=RegistrySettings(
                index_url=os.getenv("BUILD_FACTORY_REGISTRY_INDEX_URL", "https://pypi.org/pypi"),
                publish_command_template=os.getenv("BUILD_FACTORY_PUBLISH_COMMAND_TEMPLATE", ""),
                timeout_seconds=float(os.getenv("BUILD_FACTORY_REGISTRY_TIMEOUT_SECONDS", "30")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the orchestrator cannot run with."""

        orchestrator = self.orchestrator
        if orchestrator.max_concurrent < 1:
            raise ValueError("BUILD_FACTORY_MAX_CONCURRENT must be >= 1.")
        if orchestrator.worker_pool_size < orchestrator.max_concurrent:
            raise ValueError(
                "BUILD_FACTORY_WORKER_POOL_SIZE must be >= BUILD_FACTORY_MAX_CONCURRENT.",
            )
        if orchestrator.max_build_retries < 1:
            raise ValueError("BUILD_FACTORY_MAX_BUILD_RETRIES must be >= 1.")
        if orchestrator.builds_per_run < 1 or orchestrator.max_run_seconds < 1:
            raise ValueError("Continue-as-new thresholds must be positive.")
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("BUILD_FACTORY_POLL_INTERVAL_SECONDS must be > 0.")
        if self.spec.max_attempts < 1:
            raise ValueError("BUILD_FACTORY_SPEC_MAX_ATTEMPTS must be >= 1.")
        if self.spec.max_quality_fixes < 0:
            raise ValueError("BUILD_FACTORY_MAX_QUALITY_FIXES must be >= 0.")
        ceiling = self.provider.retry_delay_ceiling_seconds
        if ceiling is not None and ceiling < 1:
            raise ValueError("BUILD_FACTORY_RETRY_DELAY_CEILING_SECONDS must be >= 1.")
        if self.provider.retry_buffer_seconds < 0:
            raise ValueError("BUILD_FACTORY_RETRY_BUFFER_SECONDS must be >= 0.")
        template = self.agent.command_template
        if "{prompt}" not in template and "{prompt_file}" not in template:
            raise ValueError(
                "BUILD_FACTORY_AGENT_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        parsed = urlparse(self.registry.index_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid registry index URL: {self.registry.index_url!r}. "
                "Expected an absolute http(s) URL.",
            )

    def spec_config(self) -> dict[str, int]:
        """Spec limits in the shape spec factories validate."""

        return {
            "max_attempts": self.spec.max_attempts,
            "max_quality_fixes": self.spec.max_quality_fixes,
        }


def _env_conflict_policy() -> ConflictPolicy:
    raw = os.getenv("BUILD_FACTORY_CONFLICT_POLICY", ConflictPolicy.REPORT.value).strip().lower()
    try:
        return ConflictPolicy(raw)
    except ValueError as error:
        raise ValueError(
            f"Invalid BUILD_FACTORY_CONFLICT_POLICY: {raw!r}. Expected 'report' or 'abort'.",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
