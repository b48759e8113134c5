"""Workdir materialization for file-based step execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from build_factory.agents.contracts import (
    StepInputContract,
    StepManifest,
    write_manifest,
    write_step_input,
)

STEP_CONTRACT_VERSION = 1


@dataclass(slots=True)
class MaterializedStep:
    manifest_path: Path
    manifest: StepManifest


class StepWorkdirManager:
    """Creates a deterministic per-step directory layout under ``root_dir``."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def step_dir(self, *, step_id: str, run_id: str) -> Path:
        return self.root_dir / f"{step_id}--{run_id}"

    def materialize(
        self,
        *,
        step_id: str,
        run_id: str,
        step_input: StepInputContract,
        repository_dir: Path,
    ) -> MaterializedStep:
        base_dir = self.step_dir(step_id=step_id, run_id=run_id)
        input_dir = base_dir / "input"
        output_dir = base_dir / "output"
        meta_dir = base_dir / "meta"
        for directory in (input_dir, output_dir, meta_dir):
            directory.mkdir(parents=True, exist_ok=True)

        step_input_path = input_dir / "step_input.json"
        manifest_path = meta_dir / "step_manifest.json"
        write_step_input(step_input_path, step_input)

        manifest = StepManifest(
            contract_version=STEP_CONTRACT_VERSION,
            step_id=step_id,
            run_id=run_id,
            work_kind=step_input.work_kind,
            workdir=str(base_dir),
            repository_dir=str(repository_dir),
            step_input_path=str(step_input_path),
            output_result_path=str(output_dir / "agent_result.json"),
            output_stdout_path=str(output_dir / "agent_stdout.log"),
            output_stderr_path=str(output_dir / "agent_stderr.log"),
        )
        write_manifest(manifest_path, manifest)
        return MaterializedStep(manifest_path=manifest_path, manifest=manifest)
