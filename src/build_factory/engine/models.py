"""Domain models for the state transition engine."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from random import Random
from typing import Any


class EngineStatus(str, Enum):
    """Lifecycle of one goal tracked by the engine."""

    RUNNING = "RUNNING"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    COMPLETED = "COMPLETED"


class StepStatus(str, Enum):
    """Lifecycle of one requested unit of work."""

    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"


class ResponseStatus(str, Enum):
    """Outcome reported by an agent for one step."""

    OK = "OK"
    FAIL = "FAIL"
    PARTIAL = "PARTIAL"


class EventType(str, Enum):
    """Audit log event types appended by transitions."""

    WORK_REQUESTED = "WORK_REQUESTED"
    ANNOTATED = "ANNOTATED"
    APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_FAILED = "STEP_FAILED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"


APPROVAL_STEP_KIND = "approval"


class EngineError(RuntimeError):
    """Structural protocol violation. Never retried."""


class GoalMismatchError(EngineError):
    """Response references a different goal than the engine state."""

    def __init__(self, *, expected: str, actual: str) -> None:
        super().__init__(f"Goal mismatch: expected {expected!r}, got {actual!r}")
        self.expected = expected
        self.actual = actual


class StepNotFoundError(EngineError):
    """Response references a step that was never requested."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Step not found: {step_id!r}")
        self.step_id = step_id


class DuplicateStepError(EngineError):
    """Action requests a step id that is already in use."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Step already exists: {step_id!r}")
        self.step_id = step_id


class EngineIterationLimitError(EngineError):
    """Engine loop exceeded its iteration budget without completing."""


@dataclass(frozen=True, slots=True)
class Step:
    """One outstanding unit of work or approval."""

    kind: str
    status: StepStatus
    requested_at: datetime
    updated_at: datetime
    payload: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class Event:
    """Append-only log entry."""

    type: EventType
    at: datetime
    step_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class EngineState:
    """Snapshot of one goal. Transitions return new instances."""

    goal_id: str
    status: EngineStatus = EngineStatus.RUNNING
    open_steps: dict[str, Step] = field(default_factory=dict)
    artifacts: dict[str, Any] = field(default_factory=dict)
    log: tuple[Event, ...] = ()

    def waiting_steps(self) -> list[tuple[str, Step]]:
        """Steps not yet dispatched, in request order."""

        return [
            (step_id, step)
            for step_id, step in self.open_steps.items()
            if step.status == StepStatus.WAITING
        ]

    def to_dict(self) -> dict[str, Any]:
        """Serialize state for checkpoints and CLI output."""

        return {
            "goal_id": self.goal_id,
            "status": self.status.value,
            "open_steps": {
                step_id: {
                    "kind": step.kind,
                    "status": step.status.value,
                    "requested_at": step.requested_at.isoformat(),
                    "updated_at": step.updated_at.isoformat(),
                    "payload": step.payload,
                }
                for step_id, step in self.open_steps.items()
            },
            "artifacts": dict(self.artifacts),
            "log": [
                {
                    "type": event.type.value,
                    "at": event.at.isoformat(),
                    "step_id": event.step_id,
                    "details": event.details,
                }
                for event in self.log
            ],
        }


@dataclass(frozen=True, slots=True)
class RequestWork:
    work_kind: str
    payload: dict[str, Any] | None = None
    step_id: str | None = None


@dataclass(frozen=True, slots=True)
class Annotate:
    key: str
    value: Any


@dataclass(frozen=True, slots=True)
class RequestApproval:
    payload: dict[str, Any] | None = None
    step_id: str | None = None


Action = RequestWork | Annotate | RequestApproval


@dataclass(frozen=True, slots=True)
class AgentResponse:
    """Structured result of one agent run for one step."""

    goal_id: str
    workflow_id: str
    step_id: str
    run_id: str
    agent_role: str
    status: ResponseStatus
    content: Any = None
    errors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DecisionBasis:
    step_id: str
    run_id: str


@dataclass(frozen=True, slots=True)
class Decision:
    """Ordered actions emitted by a spec, optionally finalizing the goal."""

    decision_id: str
    based_on: DecisionBasis
    actions: tuple[Action, ...] = ()
    finalize: bool = False


@dataclass(frozen=True, slots=True)
class TransitionContext:
    """Injected clock and random draw used by one transition."""

    now: datetime
    random: float

    @property
    def epoch_ms(self) -> int:
        return int(self.now.timestamp() * 1000)


class ContextSource:
    """Produces transition contexts from an injected clock and seeded random source."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] | None = None,
        rng: Random | None = None,
        seed: int | None = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._rng = rng or Random(seed)  # noqa: S311

    def next(self) -> TransitionContext:
        return TransitionContext(now=self._clock(), random=self._rng.random())


def decision_id_for(*, step_id: str, run_id: str, context: TransitionContext) -> str:
    """Derive a decision id from its basis and the transition clock."""

    return f"decision-{step_id}-{run_id}-{context.epoch_ms}"
