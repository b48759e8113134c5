"""Domain models for the build queue and orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BuildStatus(str, Enum):
    """Package build lifecycle. Mutated only by the orchestrator."""

    PENDING = "pending"
    BUILDING = "building"
    PUBLISHED = "published"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    """Terminal result a build job reports back to the orchestrator."""

    PUBLISHED = "published"
    FAILED = "failed"
    RESCHEDULED = "rescheduled"


class SignalKind(str, Enum):
    """Ordered control signals accepted by a running orchestrator."""

    NEW_PACKAGES = "new_packages"
    PAUSE = "pause"
    RESUME = "resume"
    DRAIN = "drain"
    EMERGENCY_STOP = "emergency_stop"
    ADJUST_CONCURRENCY = "adjust_concurrency"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CONTINUED = "continued"
    DRAINED = "drained"
    STOPPED = "stopped"
    FAILED = "failed"


class CheckpointStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PackageSpec:
    """A package the factory should build."""

    name: str
    priority: int = 0
    dependencies: frozenset[str] = frozenset()
    category: str = "service"
    version: str = "0.1.0"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PackageSpec:
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValueError("package.name must be a non-empty string")
        dependencies = raw.get("dependencies", raw.get("deps", []))
        if not isinstance(dependencies, list | tuple | set | frozenset):
            raise TypeError(f"package {name!r}: dependencies must be a list")
        return cls(
            name=name.strip(),
            priority=int(raw.get("priority", 0)),
            dependencies=frozenset(str(item) for item in dependencies),
            category=str(raw.get("category", "service")),
            version=str(raw.get("version", "0.1.0")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "dependencies": sorted(self.dependencies),
            "category": self.category,
            "version": self.version,
        }


@dataclass(slots=True)
class PackageEntry:
    """Queue entry: package plus orchestrator-owned build state."""

    package: PackageSpec
    status: BuildStatus = BuildStatus.PENDING
    attempts: int = 0
    run_after: datetime | None = None
    last_error: str | None = None
    failed_phase: str | None = None

    @property
    def name(self) -> str:
        return self.package.name


@dataclass(slots=True)
class BuildOutcome:
    """What a finished build job reports. Never mutates the queue itself."""

    package_name: str
    kind: OutcomeKind
    error: str | None = None
    failed_phase: str | None = None
    next_retry_delay: str | None = None
    skipped: bool = False
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class OrchestratorSignal:
    kind: SignalKind
    payload: dict[str, Any] = field(default_factory=dict)
    signal_id: int | None = None


@dataclass(slots=True)
class CheckpointRecord:
    """One append-only checkpoint entry for a package build."""

    package_name: str
    goal_id: str
    step_kind: str
    status: CheckpointStatus
    data: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class PackageEventView:
    package_name: str
    event_type: str
    status_from: str | None
    status_to: str | None
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class OrchestratorRunView:
    run_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None
    completed_builds: int
    max_concurrent: int
    stop_reason: str | None


@dataclass(slots=True)
class OrchestratorStatus:
    """Query result describing a live orchestrator."""

    run_id: str | None
    paused: bool
    draining: bool
    stopping: bool
    max_concurrent: int
    active_builds: list[str]
    counts: dict[str, int]
    blocked: list[str]
    completed_builds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "paused": self.paused,
            "draining": self.draining,
            "stopping": self.stopping,
            "max_concurrent": self.max_concurrent,
            "active_builds": list(self.active_builds),
            "counts": dict(self.counts),
            "blocked": list(self.blocked),
            "completed_builds": self.completed_builds,
        }
