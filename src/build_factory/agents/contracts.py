"""File-based contracts between the factory and CLI agents."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from build_factory.engine.models import ResponseStatus


@dataclass(slots=True)
class StepInputContract:
    """Step input payload consumed by the agent."""

    work_kind: str
    prompt: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AgentOutputContract:
    """Result file written by the agent."""

    status: ResponseStatus
    content: Any = None
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StepManifest:
    """Manifest stored with each dispatched step."""

    contract_version: int
    step_id: str
    run_id: str
    work_kind: str
    workdir: str
    repository_dir: str
    step_input_path: str
    output_result_path: str
    output_stdout_path: str
    output_stderr_path: str


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True, default=str),
        "utf-8",
    )


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def write_step_input(path: Path, payload: StepInputContract) -> None:
    write_json(path, asdict(payload))


def read_step_input(path: Path) -> StepInputContract:
    """Deserialize and validate step input contract."""

    raw = load_json(path)
    work_kind = raw.get("work_kind")
    prompt = raw.get("prompt")
    payload = raw.get("payload", {})
    if not isinstance(work_kind, str) or not work_kind.strip():
        raise ValueError("step_input.work_kind must be a non-empty string")
    if not isinstance(prompt, str):
        raise TypeError("step_input.prompt must be a string")
    if not isinstance(payload, dict):
        raise TypeError("step_input.payload must be an object")
    return StepInputContract(work_kind=work_kind, prompt=prompt, payload=payload)


def write_agent_output(path: Path, payload: AgentOutputContract) -> None:
    write_json(
        path,
        {"status": payload.status.value, "content": payload.content, "errors": payload.errors},
    )


def read_agent_output(path: Path) -> AgentOutputContract:
    """Deserialize agent result, rejecting unknown statuses."""

    raw = load_json(path)
    status_raw = raw.get("status", ResponseStatus.OK.value)
    try:
        status = ResponseStatus(str(status_raw).upper())
    except ValueError as error:
        raise ValueError(f"agent_result.status is not one of OK/FAIL/PARTIAL: {status_raw!r}") from error
    errors = raw.get("errors", [])
    if not isinstance(errors, list):
        raise TypeError("agent_result.errors must be an array")
    return AgentOutputContract(
        status=status,
        content=raw.get("content"),
        errors=[str(item) for item in errors],
    )


def write_manifest(path: Path, manifest: StepManifest) -> None:
    write_json(path, asdict(manifest))


def read_manifest(path: Path) -> StepManifest:
    """Deserialize manifest, failing on missing fields."""

    raw = load_json(path)
    try:
        return StepManifest(**raw)
    except TypeError as error:
        raise ValueError(f"Invalid step manifest {path}: {error}") from error
