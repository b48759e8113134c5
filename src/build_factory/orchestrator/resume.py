"""Resume point detection from persisted build checkpoints."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from build_factory.orchestrator.models import CheckpointRecord, CheckpointStatus
from build_factory.specs.package_build import ARTIFACT_BY_KIND, BUILD_PHASES, QUALITY_FIX_ATTEMPTS

SCAFFOLD_THRESHOLD = 30
IMPLEMENT_THRESHOLD = 80
RATE_LIMITED_CHECKPOINT = "rate_limited"


@dataclass(slots=True)
class ResumePoint:
    """Where a package build should pick up, and what it already produced."""

    phase: str
    completed_phases: list[str]
    artifacts: dict[str, Any] = field(default_factory=dict)
    last_failure: dict[str, Any] | None = None

    @property
    def is_fresh(self) -> bool:
        return not self.completed_phases

    @property
    def completion_percentage(self) -> int:
        return round(100 * len(self.completed_phases) / len(BUILD_PHASES))


def detect_resume_point(checkpoints: Sequence[CheckpointRecord]) -> ResumePoint:
    """Replay append-only checkpoints into the artifacts a build already owns.

    A ``failed`` checkpoint written after the last success does not discard the
    completed phases; the build resumes at the first phase without output. It
    does end that attempt's quality-fix rounds, so a retried build gets the
    full fix allowance again. A rate-limit pause is not a failed attempt.
    """

    artifacts: dict[str, Any] = {}
    last_failure: dict[str, Any] | None = None
    for record in checkpoints:
        if record.status == CheckpointStatus.FAILED:
            last_failure = {"step_kind": record.step_kind, **record.data}
            if record.step_kind != RATE_LIMITED_CHECKPOINT:
                artifacts.pop(QUALITY_FIX_ATTEMPTS, None)
            continue
        artifact = ARTIFACT_BY_KIND.get(record.step_kind)
        if artifact is not None:
            artifacts[artifact] = record.data.get("content")
        if QUALITY_FIX_ATTEMPTS in record.data:
            artifacts[QUALITY_FIX_ATTEMPTS] = record.data[QUALITY_FIX_ATTEMPTS]

    completed = [kind for kind, artifact in BUILD_PHASES if artifact in artifacts]
    phase = next((kind for kind, artifact in BUILD_PHASES if artifact not in artifacts), "complete")
    return ResumePoint(
        phase=phase,
        completed_phases=completed,
        artifacts=artifacts,
        last_failure=last_failure,
    )


def resume_phase_for_completion(completion_percentage: float, *, complete: bool) -> str:
    """Coarse resume phase from a completion percentage (0-100)."""

    if complete:
        return "complete"
    if completion_percentage < SCAFFOLD_THRESHOLD:
        return "scaffold"
    if completion_percentage < IMPLEMENT_THRESHOLD:
        return "implement"
    return "test"

