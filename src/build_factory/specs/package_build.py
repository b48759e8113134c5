"""Package build protocol: scaffold, implement, test, then a bounded quality-fix loop.

Progress is expressed purely as artifact presence, so a goal seeded with
artifacts restored from a checkpoint resumes at the first missing phase.
"""

from __future__ import annotations

from typing import Any

from build_factory.engine.models import (
    AgentResponse,
    Annotate,
    Decision,
    EngineState,
    RequestWork,
    ResponseStatus,
    TransitionContext,
)
from build_factory.errors import ConfigurationError
from build_factory.specs.base import (
    ERROR_ARTIFACT,
    SpecContext,
    SpecDescription,
    make_decision,
    max_attempts_from,
    retry_or_give_up,
    validate_max_attempts,
)

SCAFFOLD = "scaffold"
IMPLEMENT = "implement"
TEST = "test"
QUALITY_CHECK = "quality_check"
FIX_QUALITY = "fix_quality"

# (work kind, artifact key) in build order.
BUILD_PHASES: tuple[tuple[str, str], ...] = (
    (SCAFFOLD, "scaffold"),
    (IMPLEMENT, "implementation"),
    (TEST, "tests"),
    (QUALITY_CHECK, "quality"),
)
ARTIFACT_BY_KIND = dict(BUILD_PHASES)
QUALITY_FIX_ATTEMPTS = "quality_fix_attempts"
DEFAULT_MAX_QUALITY_FIXES = 3

_RETRY_KEYS = frozenset({"retry", "previous_error", "attempt_number", "partial"})


def failed_phase(work_kind: str | None) -> str:
    """Coarse phase reported for a failed build."""

    if work_kind in {SCAFFOLD, IMPLEMENT}:
        return "build"
    if work_kind == TEST:
        return "test"
    if work_kind in {QUALITY_CHECK, FIX_QUALITY}:
        return "quality"
    return "publish"


class PackageBuildSpec:
    name = "package-build"
    version = "1.0.0"

    def __init__(self, context: SpecContext) -> None:
        self.context = context
        config = context.config
        self.package_name = str(config["package_name"])
        self.category = str(config.get("category", "service"))
        self.dependencies = list(config.get("dependencies", ()))
        self.max_attempts = max_attempts_from(config)
        self.max_quality_fixes = int(config.get("max_quality_fixes", DEFAULT_MAX_QUALITY_FIXES))

    def on_start(self, state: EngineState, context: TransitionContext) -> Decision:
        next_kind = self._next_phase(state)
        if next_kind is None:
            self.context.logger.info("Package %s already built, nothing to resume", self.package_name)
            return make_decision(step_id="start", run_id="start", context=context, finalize=True)
        if next_kind != SCAFFOLD:
            self.context.logger.info("Resuming package %s at %s", self.package_name, next_kind)
        return make_decision(
            step_id="start",
            run_id="start",
            context=context,
            actions=(RequestWork(work_kind=next_kind, payload=self._payload(state, next_kind)),),
        )

    def on_agent_completed(  # noqa: PLR0911
        self,
        state: EngineState,
        response: AgentResponse,
        context: TransitionContext,
    ) -> Decision:
        step = state.open_steps.get(response.step_id)
        kind = step.kind if step is not None else ""
        payload = dict(step.payload or {}) if step is not None else {}

        def decide(*actions: Any, finalize: bool = False) -> Decision:
            return make_decision(
                step_id=response.step_id,
                run_id=response.run_id,
                context=context,
                actions=actions,
                finalize=finalize,
            )

        if response.status == ResponseStatus.PARTIAL:
            return decide(
                RequestWork(
                    work_kind=kind,
                    payload={**_strip_retry(payload), "retry": True, "partial": response.content},
                ),
            )

        if kind == QUALITY_CHECK:
            return self._on_quality_result(state, response, decide)

        if response.status == ResponseStatus.FAIL:
            error = "; ".join(response.errors) or f"{kind} reported failure"
            self.context.logger.warning("Package %s %s failed: %s", self.package_name, kind, error)
            return retry_or_give_up(
                work_kind=kind,
                error=error,
                attempt_number=int(payload.get("attempt_number", 1)),
                max_attempts=self.max_attempts,
                context=context,
                step_id=response.step_id,
                payload=_strip_retry(payload),
            )

        if kind == FIX_QUALITY:
            return decide(
                RequestWork(
                    work_kind=QUALITY_CHECK,
                    payload=self._payload(state, QUALITY_CHECK),
                ),
            )

        artifact = ARTIFACT_BY_KIND.get(kind)
        if artifact is None:
            self.context.logger.warning("Unexpected work kind %r for %s", kind, self.package_name)
            return decide()

        annotated = {**state.artifacts, artifact: response.content}
        next_kind = _first_missing(annotated)
        if next_kind is None:
            return decide(Annotate(key=artifact, value=response.content), finalize=True)
        return decide(
            Annotate(key=artifact, value=response.content),
            RequestWork(work_kind=next_kind, payload=self._payload_from(annotated, next_kind)),
        )

    def on_agent_error(  # noqa: PLR0913
        self,
        state: EngineState,
        work_kind: str,
        error: str,
        attempt_number: int,
        context: TransitionContext,
        *,
        step_id: str = "unknown",
    ) -> Decision:
        self.context.logger.warning(
            "Package %s %s failed (attempt %s/%s): %s",
            self.package_name,
            work_kind,
            attempt_number,
            self.max_attempts,
            error,
        )
        return retry_or_give_up(
            work_kind=work_kind,
            error=error,
            attempt_number=attempt_number,
            max_attempts=self.max_attempts,
            context=context,
            step_id=step_id,
            payload=self._payload(state, work_kind),
        )

    def post_apply(self, state: EngineState) -> None:
        self.context.logger.debug(
            "Package %s state: status=%s artifacts=%s",
            self.package_name,
            state.status.value,
            sorted(state.artifacts),
        )

    def _on_quality_result(self, state: EngineState, response: AgentResponse, decide) -> Decision:
        content = response.content if isinstance(response.content, dict) else {}
        passed = response.status == ResponseStatus.OK and content.get("passed", True) is not False
        if passed:
            return decide(Annotate(key="quality", value=response.content), finalize=True)

        fixes = int(state.artifacts.get(QUALITY_FIX_ATTEMPTS, 0))
        issues = content.get("issues") or list(response.errors)
        if fixes >= self.max_quality_fixes:
            return decide(
                Annotate(
                    key=ERROR_ARTIFACT,
                    value={
                        "work_kind": QUALITY_CHECK,
                        "error": f"quality checks still failing after {fixes} fix attempts",
                        "issues": issues,
                        "attempt_number": fixes,
                    },
                ),
                finalize=True,
            )
        return decide(
            Annotate(key=QUALITY_FIX_ATTEMPTS, value=fixes + 1),
            RequestWork(
                work_kind=FIX_QUALITY,
                payload={**self._payload(state, FIX_QUALITY), "issues": issues, "fix_round": fixes + 1},
            ),
        )

    def _next_phase(self, state: EngineState) -> str | None:
        return _first_missing(state.artifacts)

    def _payload(self, state: EngineState, work_kind: str) -> dict[str, Any]:
        return self._payload_from(state.artifacts, work_kind)

    def _payload_from(self, artifacts: dict[str, Any], work_kind: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "package": self.package_name,
            "category": self.category,
            "dependencies": self.dependencies,
        }
        if work_kind == IMPLEMENT:
            scaffold = artifacts.get("scaffold")
            subtasks = scaffold.get("subtasks", []) if isinstance(scaffold, dict) else []
            payload["subtasks"] = subtasks
        return payload


def _first_missing(artifacts: dict[str, Any]) -> str | None:
    for kind, artifact in BUILD_PHASES:
        if artifact not in artifacts:
            return kind
    return None


def _strip_retry(payload: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in payload.items() if key not in _RETRY_KEYS}


class PackageBuildSpecFactory:
    name = PackageBuildSpec.name
    version = PackageBuildSpec.version

    def describe(self) -> SpecDescription:
        return SpecDescription(
            name=self.name,
            version=self.version,
            description="Scaffolds, implements, tests and quality-checks one package.",
            required_work_kinds=(SCAFFOLD, IMPLEMENT, TEST, QUALITY_CHECK, FIX_QUALITY),
            config_schema={
                "package_name": "str (required)",
                "category": "str",
                "dependencies": "list[str]",
                "max_attempts": "int >= 1",
                "max_quality_fixes": "int >= 0",
            },
        )

    def validate(self, config: dict[str, Any]) -> None:
        name = config.get("package_name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigurationError("package_name must be a non-empty string")
        validate_max_attempts(config)
        fixes = config.get("max_quality_fixes", DEFAULT_MAX_QUALITY_FIXES)
        if isinstance(fixes, bool) or not isinstance(fixes, int) or fixes < 0:
            raise ConfigurationError(f"max_quality_fixes must be >= 0, got {fixes!r}")
        dependencies = config.get("dependencies", [])
        if not isinstance(dependencies, list | tuple):
            raise ConfigurationError("dependencies must be a list of package names")

    def create(self, context: SpecContext) -> PackageBuildSpec:
        return PackageBuildSpec(context)
