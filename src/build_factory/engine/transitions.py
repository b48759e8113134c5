"""Pure state transitions for the engine.

Every function here takes the current ``EngineState`` and returns a new one.
Input containers are copied, never mutated, so a caller holding the old state
(for replay or diffing) keeps seeing exactly what it had.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any

from build_factory.engine.models import (
    APPROVAL_STEP_KIND,
    Action,
    AgentResponse,
    Annotate,
    DuplicateStepError,
    EngineState,
    EngineStatus,
    Event,
    EventType,
    GoalMismatchError,
    RequestApproval,
    RequestWork,
    ResponseStatus,
    Step,
    StepNotFoundError,
    StepStatus,
    TransitionContext,
)

_RANDOM_DIGITS = 1_000_000


def generate_step_id(context: TransitionContext, *, prefix: str = "step", sequence: int = 0) -> str:
    """Deterministic step id from the injected clock, random draw and a per-state sequence.

    Actions of one decision share a context, so callers pass a sequence that
    differs per action (the event count of the state being extended).
    """

    suffix = (int(context.random * _RANDOM_DIGITS) + sequence) % _RANDOM_DIGITS
    return f"{prefix}-{context.epoch_ms}-{suffix:06d}"


def _new_step_id(
    state: EngineState,
    explicit: str | None,
    context: TransitionContext,
    *,
    prefix: str,
) -> str:
    if explicit:
        if explicit in state.open_steps:
            raise DuplicateStepError(explicit)
        return explicit
    sequence = len(state.log)
    step_id = generate_step_id(context, prefix=prefix, sequence=sequence)
    while step_id in state.open_steps:
        sequence += 1
        step_id = generate_step_id(context, prefix=prefix, sequence=sequence)
    return step_id


def apply_request_work(
    state: EngineState,
    action: RequestWork,
    context: TransitionContext,
) -> EngineState:
    """Open a waiting step.

    Raises:
        DuplicateStepError: an explicit step id is already in use.
    """

    step_id = _new_step_id(state, action.step_id, context, prefix="step")
    step = Step(
        kind=action.work_kind,
        status=StepStatus.WAITING,
        requested_at=context.now,
        updated_at=context.now,
        payload=action.payload,
    )
    return replace(
        state,
        open_steps={**state.open_steps, step_id: step},
        log=(
            *state.log,
            Event(
                type=EventType.WORK_REQUESTED,
                at=context.now,
                step_id=step_id,
                details={"work_kind": action.work_kind},
            ),
        ),
    )


def apply_annotate(state: EngineState, action: Annotate, context: TransitionContext) -> EngineState:
    return replace(
        state,
        artifacts={**state.artifacts, action.key: action.value},
        log=(
            *state.log,
            Event(type=EventType.ANNOTATED, at=context.now, details={"key": action.key}),
        ),
    )


def apply_request_approval(
    state: EngineState,
    action: RequestApproval,
    context: TransitionContext,
) -> EngineState:
    step_id = _new_step_id(state, action.step_id, context, prefix="approval")
    step = Step(
        kind=APPROVAL_STEP_KIND,
        status=StepStatus.WAITING,
        requested_at=context.now,
        updated_at=context.now,
        payload=action.payload,
    )
    return replace(
        state,
        status=EngineStatus.AWAITING_APPROVAL,
        open_steps={**state.open_steps, step_id: step},
        log=(
            *state.log,
            Event(type=EventType.APPROVAL_REQUESTED, at=context.now, step_id=step_id),
        ),
    )


def apply_agent_response(
    state: EngineState,
    response: AgentResponse,
    context: TransitionContext,
) -> EngineState:
    """Fold one agent response into the matching open step.

    Raises:
        GoalMismatchError: response belongs to another goal.
        StepNotFoundError: response references an unknown step.
    """

    if response.goal_id != state.goal_id:
        raise GoalMismatchError(expected=state.goal_id, actual=response.goal_id)
    step = state.open_steps.get(response.step_id)
    if step is None:
        raise StepNotFoundError(response.step_id)

    status = state.status
    if step.kind == APPROVAL_STEP_KIND and status == EngineStatus.AWAITING_APPROVAL:
        status = EngineStatus.RUNNING

    log = state.log
    if response.status == ResponseStatus.OK:
        new_status = StepStatus.DONE
        log = (
            *log,
            Event(
                type=EventType.STEP_COMPLETED,
                at=context.now,
                step_id=response.step_id,
                details={"run_id": response.run_id, "agent_role": response.agent_role},
            ),
        )
    elif response.status == ResponseStatus.FAIL:
        new_status = StepStatus.FAILED
        log = (
            *log,
            Event(
                type=EventType.STEP_FAILED,
                at=context.now,
                step_id=response.step_id,
                details={"run_id": response.run_id, "errors": list(response.errors)},
            ),
        )
    else:
        new_status = StepStatus.IN_PROGRESS

    return replace(
        state,
        status=status,
        open_steps={
            **state.open_steps,
            response.step_id: replace(step, status=new_status, updated_at=context.now),
        },
        log=log,
    )


def mark_step_in_progress(
    state: EngineState,
    step_id: str,
    context: TransitionContext,
) -> EngineState:
    """Record that a waiting step was dispatched to an agent."""

    step = state.open_steps.get(step_id)
    if step is None:
        raise StepNotFoundError(step_id)
    return replace(
        state,
        open_steps={
            **state.open_steps,
            step_id: replace(step, status=StepStatus.IN_PROGRESS, updated_at=context.now),
        },
    )


def mark_step_failed(
    state: EngineState,
    step_id: str,
    error: str,
    context: TransitionContext,
) -> EngineState:
    """Fail a step whose agent raised instead of responding."""

    step = state.open_steps.get(step_id)
    if step is None:
        raise StepNotFoundError(step_id)
    return replace(
        state,
        open_steps={
            **state.open_steps,
            step_id: replace(step, status=StepStatus.FAILED, updated_at=context.now),
        },
        log=(
            *state.log,
            Event(
                type=EventType.STEP_FAILED,
                at=context.now,
                step_id=step_id,
                details={"error": error},
            ),
        ),
    )


def finalize_state(state: EngineState, context: TransitionContext) -> EngineState:
    """Mark the goal completed. Repeated calls leave the state unchanged."""

    if state.status == EngineStatus.COMPLETED:
        return state
    return replace(
        state,
        status=EngineStatus.COMPLETED,
        log=(*state.log, Event(type=EventType.WORKFLOW_COMPLETED, at=context.now)),
    )


def apply_action(state: EngineState, action: Action, context: TransitionContext) -> EngineState:
    if isinstance(action, RequestWork):
        return apply_request_work(state, action, context)
    if isinstance(action, Annotate):
        return apply_annotate(state, action, context)
    if isinstance(action, RequestApproval):
        return apply_request_approval(state, action, context)
    raise TypeError(f"Unsupported action: {action!r}")


def initial_state(goal_id: str, *, artifacts: dict[str, Any] | None = None) -> EngineState:
    """Fresh running state, optionally seeded with restored artifacts."""

    if not goal_id.strip():
        raise ValueError("goal_id must be a non-empty string")
    return EngineState(goal_id=goal_id, artifacts=dict(artifacts or {}))
