from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from build_factory.agents.base import AgentRequest
from build_factory.agents.cli_agent import STEPS_DIRNAME, CliAgent, build_prompt
from build_factory.agents.cli_backend import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    build_run_args,
)
from build_factory.agents.contracts import read_manifest, read_step_input
from build_factory.engine.models import ResponseStatus
from build_factory.retry_classifier import RateLimitedError
from tests.helpers import ECHO_AGENT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Agents"),
    allure.feature("CLI Agent"),
]


class ScriptedBackend:
    """Writes canned stdout/stderr/result files instead of starting a process."""

    def __init__(
        self,
        *,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        result: dict | None = None,
        timed_out: bool = False,
    ) -> None:
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.result = result
        self.timed_out = timed_out
        self.requests: list[BackendRunRequest] = []

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        self.requests.append(request)
        request.stdout_path.write_text(self.stdout, "utf-8")
        request.stderr_path.write_text(self.stderr, "utf-8")
        if self.result is not None:
            manifest = read_manifest(request.manifest_path)
            Path(manifest.output_result_path).write_text(json.dumps(self.result), "utf-8")
        return BackendRunResult(
            exit_code=self.exit_code,
            timed_out=self.timed_out,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
        )


def _request(tmp_path: Path, work_kind: str = "greet", payload: dict | None = None) -> AgentRequest:
    return AgentRequest(
        goal_id="goal-1",
        workflow_id="wf-1",
        step_id="step-1",
        run_id="run-1",
        work_kind=work_kind,
        workdir=tmp_path,
        payload=payload or {},
    )


def _agent(backend: ScriptedBackend, **kwargs) -> CliAgent:
    return CliAgent(
        command_template="tool --prompt-file {prompt_file}",
        model="test",
        timeout_seconds=5,
        backend=backend,
        **kwargs,
    )


def test_echo_agent_subprocess_round_trip(tmp_path: Path) -> None:
    agent = CliAgent(command_template=ECHO_AGENT_COMMAND_TEMPLATE, model="echo", timeout_seconds=60)

    response = agent.execute(_request(tmp_path, "quality_check"))

    assert response.status == ResponseStatus.OK
    assert response.content == {"passed": True, "issues": []}
    assert response.agent_role == "quality_check"
    assert response.step_id == "step-1"


def test_step_workdir_is_materialized_inside_repository(tmp_path: Path) -> None:
    backend = ScriptedBackend(result={"status": "OK", "content": {"tasks": ["a"]}})

    response = _agent(backend).execute(
        _request(tmp_path, "create_tasks", {"requirements": ["r1"]}),
    )

    (request,) = backend.requests
    manifest = read_manifest(request.manifest_path)
    step_input = read_step_input(Path(manifest.step_input_path))
    assert Path(manifest.workdir) == tmp_path / STEPS_DIRNAME / "step-1--run-1"
    assert manifest.repository_dir == str(tmp_path)
    assert step_input.work_kind == "create_tasks"
    assert step_input.payload == {"requirements": ["r1"]}
    assert request.env["BUILD_FACTORY_WORK_KIND"] == "create_tasks"
    assert manifest.output_result_path in request.prompt
    assert response.content == {"tasks": ["a"]}


def test_step_workdir_can_live_outside_repository(tmp_path: Path) -> None:
    repository = tmp_path / "pkg"
    repository.mkdir()
    steps = tmp_path / STEPS_DIRNAME / "pkg"
    backend = ScriptedBackend(result={"status": "OK", "content": "done"})
    request = _request(repository)
    request.steps_dir = steps

    _agent(backend).execute(request)

    manifest = read_manifest(backend.requests[0].manifest_path)
    assert Path(manifest.workdir) == steps / "step-1--run-1"
    assert manifest.repository_dir == str(repository)
    assert backend.requests[0].cwd == repository
    assert list(repository.iterdir()) == []


def test_agent_result_status_and_errors_are_mapped(tmp_path: Path) -> None:
    backend = ScriptedBackend(result={"status": "fail", "content": None, "errors": ["2 tests failed"]})

    response = _agent(backend).execute(_request(tmp_path, "test"))

    assert response.status == ResponseStatus.FAIL
    assert response.errors == ("2 tests failed",)


def test_missing_result_file_falls_back_to_stdout(tmp_path: Path) -> None:
    backend = ScriptedBackend(stdout="  Hello there  \n")

    response = _agent(backend).execute(_request(tmp_path))

    assert response.status == ResponseStatus.OK
    assert response.content == "Hello there"


def test_rate_limited_exit_raises_with_delay(tmp_path: Path) -> None:
    backend = ScriptedBackend(exit_code=1, stderr='429 Too Many Requests {"retryDelay": "20s"}')

    with pytest.raises(RateLimitedError) as error:
        _agent(backend).execute(_request(tmp_path))

    assert error.value.next_retry_delay == "25s"


def test_rate_limit_delay_respects_ceiling(tmp_path: Path) -> None:
    backend = ScriptedBackend(exit_code=1, stderr="RESOURCE_EXHAUSTED retryDelay: 1m30s")

    with pytest.raises(RateLimitedError) as error:
        _agent(backend, retry_delay_ceiling_seconds=60).execute(_request(tmp_path))

    assert error.value.delay_seconds == 60


def test_ordinary_failure_raises_backend_error(tmp_path: Path) -> None:
    backend = ScriptedBackend(exit_code=2, stderr="Traceback: something broke")

    with pytest.raises(BackendRunError, match="exited with code 2") as error:
        _agent(backend).execute(_request(tmp_path))

    assert error.value.transient is False


def test_test_output_mentioning_429_is_an_ordinary_failure(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        exit_code=1,
        stdout="1 failed. See the rate limit section of README.md",
        stderr="FAILED tests/test_core.py:429 - AssertionError",
    )

    with pytest.raises(BackendRunError, match="exited with code 1") as error:
        _agent(backend).execute(_request(tmp_path))

    assert error.value.transient is False


def test_timeout_raises_transient_error(tmp_path: Path) -> None:
    backend = ScriptedBackend(exit_code=124, timed_out=True)

    with pytest.raises(BackendRunError, match="timed out") as error:
        _agent(backend).execute(_request(tmp_path))

    assert error.value.transient is True


def test_echo_agent_rate_limit_exit_is_classified(tmp_path: Path) -> None:
    agent = CliAgent(
        command_template=f"{ECHO_AGENT_COMMAND_TEMPLATE} --exit-code 1 "
        "--stderr-message '429 too many requests'",
        model="echo",
        timeout_seconds=60,
    )

    with pytest.raises(RateLimitedError) as error:
        agent.execute(_request(tmp_path))

    assert error.value.next_retry_delay == "40s"


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    argv = build_run_args(
        command_template="tool --model {model} --task {task_manifest} -- {prompt}",
        model="big model",
        prompt="say 'hi'",
        prompt_file=tmp_path / "prompt.txt",
        manifest_path=tmp_path / "manifest.json",
    )

    assert argv == ["tool", "--model", "big model", "--task", str(tmp_path / "manifest.json"), "--", "say 'hi'"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("tool --run", "must include"),
        ("tool {prompt} {unknown}", "Unsupported"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message):
        build_run_args(
            command_template=template,
            model="m",
            prompt="p",
            prompt_file=tmp_path / "p.txt",
            manifest_path=tmp_path / "m.json",
        )


def test_build_prompt_mentions_previous_error_on_retry() -> None:
    prompt = build_prompt(
        "test",
        {"package": "pkg", "retry": True, "previous_error": "2 tests failed", "attempt_number": 2},
    )

    assert prompt.startswith("Write and run the package tests.")
    assert "This is attempt 2. The previous attempt failed with: 2 tests failed" in prompt
    assert build_prompt("custom", {}).startswith("Perform the 'custom' step.")
