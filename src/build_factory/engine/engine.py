"""Stateful driver that folds spec decisions and agent responses into engine state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from build_factory.engine.models import (
    AgentResponse,
    ContextSource,
    Decision,
    EngineError,
    EngineIterationLimitError,
    EngineState,
    EngineStatus,
    Step,
    TransitionContext,
)
from build_factory.engine.transitions import (
    apply_action,
    apply_agent_response,
    finalize_state,
    mark_step_failed,
    mark_step_in_progress,
)
from build_factory.retry_classifier import RateLimitedError
from build_factory.specs.base import Spec

logger = logging.getLogger(__name__)

StepExecutor = Callable[[str, Step, EngineState], AgentResponse]
ResponseListener = Callable[[EngineState, AgentResponse], None]


@dataclass(slots=True)
class EngineRunSummary:
    """Counters for one ``Engine.run`` call."""

    iterations: int = 0
    dispatched: int = 0
    responses: int = 0
    errors: int = 0


class Engine:
    """Applies decisions and responses in arrival order for one goal."""

    def __init__(
        self,
        *,
        spec: Spec,
        state: EngineState,
        context_source: ContextSource | None = None,
        passthrough_errors: tuple[type[BaseException], ...] = (RateLimitedError,),
        on_response: ResponseListener | None = None,
    ) -> None:
        self.spec = spec
        self._state = state
        self.context_source = context_source or ContextSource()
        self.passthrough_errors = passthrough_errors
        self.on_response = on_response
        self.summary = EngineRunSummary()

    @property
    def state(self) -> EngineState:
        return self._state

    def start(self, context: TransitionContext | None = None) -> EngineState:
        context = context or self.context_source.next()
        return self.process_decision(self.spec.on_start(self._state, context), context)

    def process_decision(
        self,
        decision: Decision,
        context: TransitionContext | None = None,
    ) -> EngineState:
        context = context or self.context_source.next()
        state = self._state
        for action in decision.actions:
            state = apply_action(state, action, context)
        if decision.finalize:
            state = finalize_state(state, context)
        self._state = state
        self.spec.post_apply(state)
        return state

    def process_response(
        self,
        response: AgentResponse,
        context: TransitionContext | None = None,
    ) -> EngineState:
        """Fold a response, then the spec's decision about it.

        ``on_response`` observes the state after both folds.
        """

        context = context or self.context_source.next()
        self._state = apply_agent_response(self._state, response, context)
        self.summary.responses += 1
        decision = self.spec.on_agent_completed(self._state, response, context)
        state = self.process_decision(decision, context)
        if self.on_response is not None:
            self.on_response(state, response)
        return state

    def process_error(
        self,
        step_id: str,
        error: str,
        context: TransitionContext | None = None,
    ) -> EngineState:
        """Fail a step whose agent raised and let the spec decide on a retry."""

        context = context or self.context_source.next()
        step = self._state.open_steps.get(step_id)
        self._state = mark_step_failed(self._state, step_id, error, context)
        self.summary.errors += 1
        payload = step.payload if step is not None and step.payload else {}
        attempt_number = int(payload.get("attempt_number", 1))
        decision = self.spec.on_agent_error(
            self._state,
            step.kind if step is not None else "unknown",
            error,
            attempt_number,
            context,
            step_id=step_id,
        )
        return self.process_decision(decision, context)

    def run(self, executor: StepExecutor, *, max_iterations: int = 1000) -> EngineState:
        """Dispatch waiting steps until the goal completes.

        Structural engine errors and passthrough errors (rate limits) propagate
        to the caller. Any other executor failure is routed to the spec.
        """

        if not self._state.open_steps and self._state.status != EngineStatus.COMPLETED:
            self.start()

        while self._state.status != EngineStatus.COMPLETED:
            if self.summary.iterations >= max_iterations:
                raise EngineIterationLimitError(
                    f"Maximum iterations ({max_iterations}) reached without completion",
                )
            waiting = self._state.waiting_steps()
            if not waiting:
                raise EngineError(f"Goal {self._state.goal_id} has no waiting steps to dispatch")

            for step_id, step in waiting:
                if self._state.status == EngineStatus.COMPLETED:
                    break
                self._dispatch(executor, step_id, step)
            self.summary.iterations += 1

        return self._state

    def _dispatch(self, executor: StepExecutor, step_id: str, step: Step) -> None:
        self._state = mark_step_in_progress(self._state, step_id, self.context_source.next())
        self.summary.dispatched += 1
        try:
            response = executor(step_id, step, self._state)
        except (EngineError, *self.passthrough_errors):
            raise
        except Exception as error:  # noqa: BLE001
            logger.warning("Step %s (%s) failed: %s", step_id, step.kind, error)
            self.process_error(step_id, str(error))
            return
        self.process_response(response)
