"""Deterministic state transition engine."""

from build_factory.engine.models import (
    Action,
    AgentResponse,
    Annotate,
    ContextSource,
    Decision,
    DecisionBasis,
    DuplicateStepError,
    EngineError,
    EngineIterationLimitError,
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
from build_factory.engine.transitions import (
    apply_action,
    apply_agent_response,
    apply_annotate,
    apply_request_approval,
    apply_request_work,
    finalize_state,
    generate_step_id,
    initial_state,
)
from build_factory.engine.engine import Engine, EngineRunSummary  # noqa: I001

__all__ = [
    "Action",
    "AgentResponse",
    "Annotate",
    "ContextSource",
    "Decision",
    "DecisionBasis",
    "DuplicateStepError",
    "Engine",
    "EngineError",
    "EngineIterationLimitError",
    "EngineRunSummary",
    "EngineState",
    "EngineStatus",
    "Event",
    "EventType",
    "GoalMismatchError",
    "RequestApproval",
    "RequestWork",
    "ResponseStatus",
    "Step",
    "StepNotFoundError",
    "StepStatus",
    "TransitionContext",
    "apply_action",
    "apply_agent_response",
    "apply_annotate",
    "apply_request_approval",
    "apply_request_work",
    "finalize_state",
    "generate_step_id",
    "initial_state",
]
