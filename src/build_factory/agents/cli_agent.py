"""Agent that runs a command-line language-model tool against a step workdir."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from build_factory.agents.base import AgentContext, AgentRequest
from build_factory.agents.cli_backend import BackendRunError, BackendRunRequest, CliAgentBackend
from build_factory.agents.contracts import StepInputContract, StepManifest, read_agent_output
from build_factory.agents.workdir import StepWorkdirManager
from build_factory.engine.models import AgentResponse, ResponseStatus
from build_factory.retry_classifier import (
    DEFAULT_RETRY_DELAY_SECONDS,
    RETRY_DELAY_BUFFER_SECONDS,
    raise_for_provider_failure,
)

logger = logging.getLogger(__name__)

STEPS_DIRNAME = ".factory-steps"

WORK_KIND_INSTRUCTIONS: dict[str, str] = {
    "gather_requirements": "Collect the requirements for the goal described in the payload.",
    "create_tasks": "Break the requirements in the payload into a list of concrete tasks.",
    "confirm_completion": "Confirm that the tasks in the payload satisfy the requirements.",
    "greet": "Reply with a short greeting.",
    "scaffold": (
        "Create the package skeleton: build configuration, source and test directories. "
        "List independent implementation sub-tasks under content.subtasks as "
        '[{"name": ..., "instruction": ...}].'
    ),
    "implement": "Implement the package described in the payload inside the repository.",
    "test": "Write and run the package tests. Report FAIL with errors if they do not pass.",
    "quality_check": (
        'Run linters and type checks. Report content {"passed": bool, "issues": [...]}.'
    ),
    "fix_quality": "Fix the quality issues listed in the payload.",
}

_RESULT_SCHEMA = '{"status": "OK" | "FAIL" | "PARTIAL", "content": <any JSON>, "errors": [str]}'


class CliAgent:
    """Materializes a step workdir, runs the CLI tool and reads ``agent_result.json``."""

    name = "cli"

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        model: str,
        timeout_seconds: int,
        graceful_shutdown_seconds: int = 30,
        retry_delay_ceiling_seconds: int | None = None,
        retry_buffer_seconds: int = RETRY_DELAY_BUFFER_SECONDS,
        default_retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
        backend: CliAgentBackend | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.retry_delay_ceiling_seconds = retry_delay_ceiling_seconds
        self.retry_buffer_seconds = retry_buffer_seconds
        self.default_retry_delay_seconds = default_retry_delay_seconds
        self.backend = backend or CliAgentBackend()
        self.shutdown_requested = shutdown_requested

    def execute(self, request: AgentRequest) -> AgentResponse:
        workdirs = StepWorkdirManager(request.steps_dir or request.workdir / STEPS_DIRNAME)
        prompt = build_prompt(request.work_kind, request.payload)
        materialized = workdirs.materialize(
            step_id=request.step_id,
            run_id=request.run_id,
            step_input=StepInputContract(
                work_kind=request.work_kind,
                prompt=prompt,
                payload=request.payload,
            ),
            repository_dir=request.workdir,
        )
        manifest = materialized.manifest
        enriched_prompt = _enrich_prompt(prompt, manifest)

        result = self.backend.run(
            BackendRunRequest(
                command_template=self.command_template,
                model=self.model,
                prompt=enriched_prompt,
                prompt_file=Path(manifest.workdir) / "input" / "prompt.txt",
                manifest_path=materialized.manifest_path,
                cwd=request.workdir,
                stdout_path=Path(manifest.output_stdout_path),
                stderr_path=Path(manifest.output_stderr_path),
                timeout_seconds=self.timeout_seconds,
                env={
                    "BUILD_FACTORY_STEP_MANIFEST": str(materialized.manifest_path),
                    "BUILD_FACTORY_WORK_KIND": request.work_kind,
                },
                shutdown_requested=self.shutdown_requested,
                graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            ),
        )
        stdout = _read_text(result.stdout_path)
        stderr = _read_text(result.stderr_path)

        if result.timed_out:
            raise BackendRunError(
                f"Agent timed out after {self.timeout_seconds}s on {request.work_kind}",
                transient=True,
            )
        if result.exit_code != 0:
            raise_for_provider_failure(
                stderr if stderr.strip() else stdout,
                agent=self.name,
                default_delay_seconds=self.default_retry_delay_seconds,
                buffer_seconds=self.retry_buffer_seconds,
                ceiling_seconds=self.retry_delay_ceiling_seconds,
            )
            raise BackendRunError(
                f"Agent exited with code {result.exit_code} on {request.work_kind}: "
                f"{_tail(stderr or stdout)}",
                transient=False,
            )

        output_path = Path(manifest.output_result_path)
        if output_path.exists():
            output = read_agent_output(output_path)
            status, content, errors = output.status, output.content, tuple(output.errors)
        else:
            logger.info("No agent_result.json for step %s, using raw stdout", request.step_id)
            status, content, errors = ResponseStatus.OK, stdout.strip(), ()

        return AgentResponse(
            goal_id=request.goal_id,
            workflow_id=request.workflow_id,
            step_id=request.step_id,
            run_id=request.run_id,
            agent_role=request.work_kind,
            status=status,
            content=content,
            errors=errors,
        )


class CliAgentFactory:
    """Builds ``CliAgent`` for a fixed or open set of work kinds."""

    def __init__(self, *, name: str = "cli", work_kinds: Iterable[str] | None = None) -> None:
        self.name = name
        self.work_kinds = frozenset(work_kinds) if work_kinds is not None else None

    def supports(self, work_kind: str) -> bool:
        return self.work_kinds is None or work_kind in self.work_kinds

    def create(self, context: AgentContext) -> CliAgent:
        config = context.config
        return CliAgent(
            command_template=str(config["command_template"]),
            model=str(config.get("model", "")),
            timeout_seconds=int(config.get("timeout_seconds", 1800)),
            graceful_shutdown_seconds=int(config.get("graceful_shutdown_seconds", 30)),
            retry_delay_ceiling_seconds=config.get("retry_delay_ceiling_seconds"),
            retry_buffer_seconds=int(config.get("retry_buffer_seconds", RETRY_DELAY_BUFFER_SECONDS)),
            default_retry_delay_seconds=int(
                config.get("default_retry_delay_seconds", DEFAULT_RETRY_DELAY_SECONDS),
            ),
            shutdown_requested=config.get("shutdown_requested"),
        )


def build_prompt(work_kind: str, payload: dict[str, Any]) -> str:
    """Instruction text for one work kind, including retry context when present."""

    instruction = WORK_KIND_INSTRUCTIONS.get(work_kind, f"Perform the {work_kind!r} step.")
    lines = [instruction, "", "Payload:", json.dumps(payload, indent=2, sort_keys=True, default=str)]
    if payload.get("retry") and payload.get("previous_error"):
        lines.extend(
            [
                "",
                f"This is attempt {payload.get('attempt_number', 2)}. "
                f"The previous attempt failed with: {payload['previous_error']}",
            ],
        )
    return "\n".join(lines)


def _enrich_prompt(prompt: str, manifest: StepManifest) -> str:
    return (
        f"{prompt}\n"
        f"\n"
        f"Work inside the repository at: {manifest.repository_dir}\n"
        f"Write your result to: {manifest.output_result_path}\n"
        f"The result file must be JSON of the form:\n"
        f"{_RESULT_SCHEMA}\n"
    )


def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")


def _tail(text: str, *, limit: int = 500) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return "..." + stripped[-limit:]
