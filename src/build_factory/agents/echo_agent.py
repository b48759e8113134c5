"""Local deterministic agent for CLI agent integration tests and dry runs."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

from build_factory.agents.contracts import (
    AgentOutputContract,
    read_manifest,
    read_step_input,
    write_agent_output,
)
from build_factory.engine.models import ResponseStatus

_CANNED_CONTENT: dict[str, Any] = {
    "gather_requirements": {"requirements": ["echo requirement"], "estimated_tasks": 1},
    "create_tasks": {"tasks": ["echo task"]},
    "confirm_completion": {"confirmed": True},
    "greet": "Hello!",
    "scaffold": {"subtasks": []},
    "quality_check": {"passed": True, "issues": []},
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--task-manifest", required=True)
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--stderr-message", default="")
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.exit_code != 0:
        sys.stderr.write(args.stderr_message + "\n")
        return args.exit_code

    manifest = read_manifest(Path(args.task_manifest))
    step_input = read_step_input(Path(manifest.step_input_path))
    content = _CANNED_CONTENT.get(step_input.work_kind, {"echo": step_input.work_kind})
    write_agent_output(
        Path(manifest.output_result_path),
        AgentOutputContract(status=ResponseStatus.OK, content=content),
    )
    sys.stdout.write(f"echo_agent handled {step_input.work_kind}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
