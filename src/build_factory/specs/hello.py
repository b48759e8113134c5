"""Single-step greeting protocol, used for smoke runs."""

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
from build_factory.specs.base import (
    SpecContext,
    SpecDescription,
    make_decision,
    max_attempts_from,
    retry_or_give_up,
    validate_max_attempts,
)

GREET = "greet"


class HelloSpec:
    name = "hello"
    version = "1.0.0"

    def __init__(self, context: SpecContext) -> None:
        self.context = context
        self.max_attempts = max_attempts_from(context.config)

    def on_start(self, state: EngineState, context: TransitionContext) -> Decision:
        return make_decision(
            step_id="start",
            run_id="start",
            context=context,
            actions=(RequestWork(work_kind=GREET, payload={"message": "Say hello"}),),
        )

    def on_agent_completed(
        self,
        state: EngineState,
        response: AgentResponse,
        context: TransitionContext,
    ) -> Decision:
        step = state.open_steps.get(response.step_id)
        if (
            step is not None
            and step.kind == GREET
            and response.status in {ResponseStatus.OK, ResponseStatus.PARTIAL}
        ):
            return make_decision(
                step_id=response.step_id,
                run_id=response.run_id,
                context=context,
                actions=(Annotate(key="greeting", value=response.content),),
                finalize=True,
            )
        if step is not None and response.status == ResponseStatus.FAIL:
            payload = step.payload or {}
            return retry_or_give_up(
                work_kind=step.kind,
                error="; ".join(response.errors) or "greeting failed",
                attempt_number=int(payload.get("attempt_number", 1)),
                max_attempts=self.max_attempts,
                context=context,
                step_id=response.step_id,
                payload={"message": "Say hello"},
            )
        return make_decision(step_id=response.step_id, run_id=response.run_id, context=context)

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
        return retry_or_give_up(
            work_kind=work_kind,
            error=error,
            attempt_number=attempt_number,
            max_attempts=self.max_attempts,
            context=context,
            step_id=step_id,
            payload={"message": "Say hello"},
        )

    def post_apply(self, state: EngineState) -> None:
        self.context.logger.debug("Hello state %s: %s", state.goal_id, state.status.value)


class HelloSpecFactory:
    name = HelloSpec.name
    version = HelloSpec.version

    def describe(self) -> SpecDescription:
        return SpecDescription(
            name=self.name,
            version=self.version,
            description="Requests one greeting and finalizes.",
            required_work_kinds=(GREET,),
            config_schema={"max_attempts": "int >= 1"},
        )

    def validate(self, config: dict[str, Any]) -> None:
        validate_max_attempts(config)

    def create(self, context: SpecContext) -> HelloSpec:
        return HelloSpec(context)
