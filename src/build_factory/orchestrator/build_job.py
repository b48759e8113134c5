"""One package build: resume from checkpoints, drive the build spec, publish."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from build_factory.agents.base import Agent, AgentRequest
from build_factory.agents.cli_agent import STEPS_DIRNAME
from build_factory.config import Settings
from build_factory.engine.engine import Engine
from build_factory.engine.models import (
    AgentResponse,
    ContextSource,
    EngineState,
    ResponseStatus,
    Step,
)
from build_factory.engine.transitions import initial_state
from build_factory.orchestrator.models import (
    BuildOutcome,
    CheckpointStatus,
    OutcomeKind,
    PackageSpec,
)
from build_factory.orchestrator.publisher import PackageRegistryClient, PublishError
from build_factory.orchestrator.resume import RATE_LIMITED_CHECKPOINT, detect_resume_point
from build_factory.registry import Registry, agent_config_from_settings
from build_factory.retry_classifier import RateLimitedError
from build_factory.specs.base import ERROR_ARTIFACT
from build_factory.specs.package_build import (
    BUILD_PHASES,
    IMPLEMENT,
    QUALITY_FIX_ATTEMPTS,
    failed_phase,
)
from build_factory.storage.repository import FactoryRepository
from build_factory.worktree import (
    GitRunner,
    ParallelTask,
    TaskRunResult,
    Worktree,
    WorktreeManager,
    safe_name,
)

logger = logging.getLogger(__name__)

PACKAGE_BUILD_SPEC = "package-build"
PUBLISH_STEP = "publish"
MAX_ENGINE_ITERATIONS = 100

StepRunner = Callable[[Agent, AgentRequest], AgentResponse]


def run_agent_directly(agent: Agent, request: AgentRequest) -> AgentResponse:
    return agent.execute(request)


def goal_id_for(package: PackageSpec) -> str:
    return f"{package.name}@{package.version}"


class PackageBuildJob:
    """Owns ``workspace_root/<package>`` for the duration of one build."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        package: PackageSpec,
        settings: Settings,
        registry: Registry,
        repository: FactoryRepository,
        publisher: PackageRegistryClient,
        worktrees: WorktreeManager | None = None,
        step_runner: StepRunner = run_agent_directly,
        context_source: ContextSource | None = None,
    ) -> None:
        self.package = package
        self.settings = settings
        self.registry = registry
        self.repository = repository
        self.publisher = publisher
        self.worktrees = worktrees or WorktreeManager(
            git=GitRunner(timeout_seconds=settings.worktree.git_timeout_seconds),
            conflict_policy=settings.worktree.conflict_policy,
            delete_branches=settings.worktree.delete_branches,
            max_parallel=settings.worktree.max_parallel_tasks,
        )
        self.step_runner = step_runner
        self.context_source = context_source or ContextSource()
        self.goal_id = goal_id_for(package)
        self.workspace = settings.workspace_root / safe_name(package.name)
        self.steps_dir = settings.workspace_root / STEPS_DIRNAME / safe_name(package.name)
        self.workflow_id = f"build-{safe_name(package.name)}"
        self._agent_config = agent_config_from_settings(settings)
        self._checkpointed: set[str] = set()
        self._quality_fixes_recorded = 0
        self._run_counter = 0

    def run(self) -> BuildOutcome:
        name = self.package.name
        version = self.package.version
        if self._already_published():
            logger.info("Package %s==%s already published, skipping build", name, version)
            return BuildOutcome(package_name=name, kind=OutcomeKind.PUBLISHED, skipped=True)

        self.worktrees.ensure_repository(self.workspace)
        checkpoints = [
            record
            for record in self.repository.list_checkpoints(name)
            if record.goal_id == self.goal_id
        ]
        resume = detect_resume_point(checkpoints)
        self._checkpointed = set(resume.completed_phases)
        self._quality_fixes_recorded = int(resume.artifacts.get(QUALITY_FIX_ATTEMPTS, 0))
        if not resume.is_fresh:
            logger.info(
                "Resuming %s at %s (%s%% complete)",
                name,
                resume.phase,
                resume.completion_percentage,
            )

        spec = self.registry.create_spec(
            PACKAGE_BUILD_SPEC,
            {
                "package_name": name,
                "category": self.package.category,
                "dependencies": sorted(self.package.dependencies),
                **self.settings.spec_config(),
            },
        )
        engine = Engine(
            spec=spec,
            state=initial_state(self.goal_id, artifacts=resume.artifacts),
            context_source=self.context_source,
            on_response=self._checkpoint_progress,
        )

        try:
            final_state = engine.run(self._execute_step, max_iterations=MAX_ENGINE_ITERATIONS)
        except RateLimitedError as error:
            logger.warning("Build of %s rate limited, retry in %s", name, error.next_retry_delay)
            self._checkpoint_failure(
                RATE_LIMITED_CHECKPOINT,
                {"error": str(error), "next_retry_delay": error.next_retry_delay},
            )
            return BuildOutcome(
                package_name=name,
                kind=OutcomeKind.RESCHEDULED,
                error=str(error),
                next_retry_delay=error.next_retry_delay,
            )

        error_record = final_state.artifacts.get(ERROR_ARTIFACT)
        if error_record is not None:
            work_kind = error_record.get("work_kind") if isinstance(error_record, dict) else None
            message = (
                str(error_record.get("error")) if isinstance(error_record, dict) else str(error_record)
            )
            self._checkpoint_failure(work_kind or "unknown", {"error": error_record})
            return BuildOutcome(
                package_name=name,
                kind=OutcomeKind.FAILED,
                error=message,
                failed_phase=failed_phase(work_kind),
                details={
                    "dispatched": engine.summary.dispatched,
                    "errors": engine.summary.errors,
                },
            )

        return self._publish()

    def _already_published(self) -> bool:
        try:
            return self.publisher.exists(self.package.name, self.package.version)
        except httpx.HTTPError as error:
            logger.warning("Registry pre-flight check failed for %s: %s", self.package.name, error)
            return False

    def _publish(self) -> BuildOutcome:
        name = self.package.name
        try:
            self.publisher.publish(name, self.package.version, self.workspace)
        except (PublishError, httpx.HTTPError) as error:
            self._checkpoint_failure(PUBLISH_STEP, {"error": str(error)})
            return BuildOutcome(
                package_name=name,
                kind=OutcomeKind.FAILED,
                error=str(error),
                failed_phase=failed_phase(PUBLISH_STEP),
            )
        self.repository.record_checkpoint(
            package_name=name,
            goal_id=self.goal_id,
            step_kind=PUBLISH_STEP,
            status=CheckpointStatus.COMPLETED,
            data={"version": self.package.version},
        )
        return BuildOutcome(package_name=name, kind=OutcomeKind.PUBLISHED)

    def _execute_step(self, step_id: str, step: Step, state: EngineState) -> AgentResponse:
        payload = dict(step.payload or {})
        run_id = self._next_run_id()
        if step.kind == IMPLEMENT and payload.get("subtasks"):
            return self._execute_parallel(step_id, run_id, payload)

        agent = self.registry.create_agent(step.kind, config=self._agent_config)
        request = AgentRequest(
            goal_id=state.goal_id,
            workflow_id=self.workflow_id,
            step_id=step_id,
            run_id=run_id,
            work_kind=step.kind,
            workdir=self.workspace,
            payload=payload,
            steps_dir=self.steps_dir,
        )
        return self.step_runner(agent, request)

    def _execute_parallel(self, step_id: str, run_id: str, payload: dict[str, Any]) -> AgentResponse:
        tasks = [_parallel_task(raw) for raw in payload["subtasks"]]
        agent = self.registry.create_agent(IMPLEMENT, config=self._agent_config)
        shared_payload = {key: value for key, value in payload.items() if key != "subtasks"}

        def run_subtask(task: ParallelTask, worktree: Worktree) -> TaskRunResult:
            response = self.step_runner(
                agent,
                AgentRequest(
                    goal_id=self.goal_id,
                    workflow_id=self.workflow_id,
                    step_id=f"{step_id}-{safe_name(task.name)}",
                    run_id=run_id,
                    work_kind=IMPLEMENT,
                    workdir=worktree.path,
                    payload={**shared_payload, "subtask": task.payload},
                    steps_dir=self.steps_dir,
                ),
            )
            return TaskRunResult(
                task_name=task.name,
                ok=response.status == ResponseStatus.OK,
                error="; ".join(response.errors) or None,
                details={"content": response.content},
            )

        result = self.worktrees.run_parallel(
            self.workspace,
            tasks,
            run_subtask,
            branch_prefix=f"build/{safe_name(self.package.name)}",
        )
        succeeded = all(task.ok for task in result.results) and not result.merge.stopped
        errors = [f"{task.task_name}: {task.error}" for task in result.results if not task.ok]
        errors.extend(
            f"merge conflict on {conflict.branch_name}: {conflict.message}"
            for conflict in result.merge.conflicts
        )
        return AgentResponse(
            goal_id=self.goal_id,
            workflow_id=self.workflow_id,
            step_id=step_id,
            run_id=run_id,
            agent_role=IMPLEMENT,
            status=ResponseStatus.OK if succeeded else ResponseStatus.FAIL,
            content=result.to_dict(),
            errors=tuple(errors),
        )

    def _checkpoint_progress(self, state: EngineState, response: AgentResponse) -> None:
        for kind, artifact in BUILD_PHASES:
            if artifact in state.artifacts and kind not in self._checkpointed:
                self.repository.record_checkpoint(
                    package_name=self.package.name,
                    goal_id=self.goal_id,
                    step_kind=kind,
                    status=CheckpointStatus.COMPLETED,
                    data={
                        "content": state.artifacts[artifact],
                        "step_id": response.step_id,
                        "run_id": response.run_id,
                    },
                )
                self._checkpointed.add(kind)
        fixes = int(state.artifacts.get(QUALITY_FIX_ATTEMPTS, 0))
        if fixes > self._quality_fixes_recorded:
            self.repository.record_checkpoint(
                package_name=self.package.name,
                goal_id=self.goal_id,
                step_kind="fix_quality",
                status=CheckpointStatus.COMPLETED,
                data={QUALITY_FIX_ATTEMPTS: fixes, "step_id": response.step_id},
            )
            self._quality_fixes_recorded = fixes

    def _checkpoint_failure(self, step_kind: str, data: dict[str, Any]) -> None:
        self.repository.record_checkpoint(
            package_name=self.package.name,
            goal_id=self.goal_id,
            step_kind=step_kind,
            status=CheckpointStatus.FAILED,
            data=data,
        )

    def _next_run_id(self) -> str:
        self._run_counter += 1
        context = self.context_source.next()
        return f"run-{context.epoch_ms}-{self._run_counter}"


def _parallel_task(raw: Any) -> ParallelTask:
    if isinstance(raw, str):
        return ParallelTask(name=raw, instruction=raw, payload={"name": raw})
    if isinstance(raw, dict) and isinstance(raw.get("name"), str) and raw["name"].strip():
        return ParallelTask(name=raw["name"], instruction=str(raw.get("instruction", "")), payload=raw)
    raise ValueError(f"Invalid subtask entry: {raw!r}")
