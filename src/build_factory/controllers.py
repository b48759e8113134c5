"""Controllers for build-factory CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from build_factory.config import Settings
from build_factory.orchestrator.continuous import ContinuousBuildOrchestrator, merge_and_persist
from build_factory.orchestrator.flows import flow_build_runner
from build_factory.orchestrator.models import BuildStatus, PackageSpec, SignalKind
from build_factory.orchestrator.publisher import DryRunPackageRegistry, HttpPackageRegistry
from build_factory.orchestrator.queue import BuildQueue
from build_factory.orchestrator.resume import detect_resume_point, resume_phase_for_completion
from build_factory.registry import build_default_registry
from build_factory.storage.repository import FactoryRepository


@dataclass(slots=True)
class SpecsListCommand:
    """CLI input for spec listing."""

    db_path: Path | None


@dataclass(slots=True)
class PackagesAddCommand:
    """CLI input for adding packages to the build queue."""

    db_path: Path | None
    names: tuple[str, ...]
    packages_file: Path | None
    priority: int
    dependencies: tuple[str, ...]
    category: str
    version: str


@dataclass(slots=True)
class PackagesListCommand:
    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class OrchestratorRunCommand:
    """CLI input for running the continuous orchestrator."""

    db_path: Path | None
    packages_file: Path | None
    max_idle_polls: int | None
    dry_run_publish: bool


@dataclass(slots=True)
class OrchestratorStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class OrchestratorSignalCommand:
    """CLI input for sending a control signal to the running orchestrator."""

    db_path: Path | None
    kind: str
    max_concurrent: int | None = None
    packages_file: Path | None = None


@dataclass(slots=True)
class CheckpointsShowCommand:
    db_path: Path | None
    package_name: str


class FactoryCliController:
    """Coordinates queue, orchestrator and inspection CLI operations."""

    def list_specs(self, command: SpecsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            registry = build_default_registry(storage=repository)
            specs = registry.list_specs()

        lines = [f"Specs: {len(specs)}"]
        for spec in specs:
            lines.append(f"  {spec['name']} v{spec['version']}: {spec['description']}")
            lines.append(f"    work kinds: {', '.join(spec['required_work_kinds'])}")
        return lines

    def add_packages(self, command: PackagesAddCommand) -> list[str]:
        packages = [
            PackageSpec(
                name=name,
                priority=command.priority,
                dependencies=frozenset(command.dependencies),
                category=command.category,
                version=command.version,
            )
            for name in command.names
        ]
        if command.packages_file is not None:
            packages.extend(load_packages_file(command.packages_file))
        if not packages:
            return ["No packages given."]

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            running = repository.running_run()
            if running is not None:
                signal_id = repository.enqueue_signal(
                    SignalKind.NEW_PACKAGES,
                    {"packages": [package.to_dict() for package in packages]},
                )
                return [
                    f"Sent new_packages signal {signal_id} to run {running.run_id}: "
                    f"{len(packages)} package(s)",
                ]

            report = merge_and_persist(BuildQueue(repository.load_packages()), repository, packages)

        return [
            f"Packages queued: added={len(report.added)} updated={len(report.updated)} "
            f"requeued={len(report.requeued)} ignored={len(report.ignored)}",
        ]

    def list_packages(self, command: PackagesListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            entries = repository.load_packages(status=status_filter)

        lines = [f"Packages: {len(entries)}"]
        for entry in entries:
            package = entry.package
            deps = ",".join(sorted(package.dependencies)) or "-"
            line = (
                f"  {package.name}=={package.version} status={entry.status.value} "
                f"priority={package.priority} category={package.category} "
                f"attempts={entry.attempts} deps={deps}"
            )
            if entry.run_after is not None and entry.status == BuildStatus.PENDING:
                line += f" run_after={entry.run_after.isoformat()}"
            if entry.last_error:
                line += f" failed_phase={entry.failed_phase or '-'} error={entry.last_error}"
            lines.append(line)
        return lines

    def run_orchestrator(self, command: OrchestratorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        seed = load_packages_file(command.packages_file) if command.packages_file else []
        publisher: DryRunPackageRegistry | HttpPackageRegistry = (
            DryRunPackageRegistry()
            if command.dry_run_publish
            else HttpPackageRegistry(
                index_url=settings.registry.index_url,
                publish_command_template=settings.registry.publish_command_template,
                timeout_seconds=settings.registry.timeout_seconds,
            )
        )
        try:
            with _repository(settings) as repository:
                registry = build_default_registry(storage=repository)
                orchestrator = ContinuousBuildOrchestrator(
                    settings=settings,
                    repository=repository,
                    build_runner=flow_build_runner(
                        settings=settings,
                        registry=registry,
                        repository=repository,
                        publisher=publisher,
                    ),
                )
                result = orchestrator.run(seed, max_idle_polls=command.max_idle_polls)
                status = orchestrator.status()
        finally:
            if isinstance(publisher, HttpPackageRegistry):
                publisher.close()

        if not result.started:
            return [f"Orchestrator not started: {result.reason}"]
        return [
            f"Orchestrator finished: status={result.status.value if result.status else '-'} "
            f"reason={result.reason or '-'} runs={','.join(result.run_ids)}",
            f"Builds: completed={result.completed_builds} published={len(result.published)} "
            f"failed={len(result.failed)} rescheduled={result.rescheduled}",
            "Queue: " + " ".join(f"{key}={value}" for key, value in status.counts.items()),
        ]

    def status(self, command: OrchestratorStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            running = repository.running_run()
            latest = running or repository.latest_run()
            queue = BuildQueue(repository.load_packages())

        lines: list[str] = []
        if latest is None:
            lines.append("Orchestrator: never started")
        else:
            lines.append(
                f"Orchestrator: run={latest.run_id} status={latest.status.value} "
                f"started_at={latest.started_at.isoformat()} "
                f"completed_builds={latest.completed_builds} "
                f"max_concurrent={latest.max_concurrent}",
            )
            if latest.stop_reason:
                lines.append(f"Stop reason: {latest.stop_reason}")
        lines.append("Queue: " + " ".join(f"{key}={value}" for key, value in queue.counts().items()))
        building = queue.building()
        if building:
            lines.append(f"Building: {', '.join(building)}")
        blocked = queue.blocked()
        if blocked:
            lines.append(f"Blocked on dependencies: {', '.join(blocked)}")
        return lines

    def send_signal(self, command: OrchestratorSignalCommand) -> list[str]:
        try:
            kind = SignalKind(command.kind.strip().lower())
        except ValueError as error:
            allowed = ", ".join(item.value for item in SignalKind)
            raise ValueError(f"Unsupported signal: {command.kind}. Allowed: {allowed}") from error

        payload: dict[str, Any] = {}
        if kind == SignalKind.ADJUST_CONCURRENCY:
            if command.max_concurrent is None or command.max_concurrent < 1:
                raise ValueError("adjust_concurrency requires --max-concurrent >= 1.")
            payload["max_concurrent"] = command.max_concurrent
        elif kind == SignalKind.NEW_PACKAGES:
            if command.packages_file is None:
                raise ValueError("new_packages requires --packages-file.")
            payload["packages"] = [
                package.to_dict() for package in load_packages_file(command.packages_file)
            ]

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            signal_id = repository.enqueue_signal(kind, payload)
            running = repository.running_run()

        target = running.run_id if running is not None else "next run"
        return [f"Signal queued: id={signal_id} kind={kind.value} target={target}"]

    def show_checkpoints(self, command: CheckpointsShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            checkpoints = repository.list_checkpoints(command.package_name)
            events = repository.package_events(command.package_name)

        if not checkpoints and not events:
            return [f"No build history for package: {command.package_name}"]

        resume = detect_resume_point(checkpoints)
        complete = any(
            record.step_kind == "publish" and record.status.value == "completed"
            for record in checkpoints
        )
        lines = [
            f"Package: {command.package_name}",
            f"Completed phases: {', '.join(resume.completed_phases) or '-'}",
            f"Completion: {resume.completion_percentage}%",
            f"Resume phase: {resume.phase}",
            "Coarse resume phase: "
            + resume_phase_for_completion(resume.completion_percentage, complete=complete),
        ]
        if resume.last_failure is not None:
            lines.append(f"Last failure: {json.dumps(resume.last_failure, sort_keys=True, default=str)}")
        lines.append(f"Checkpoints: {len(checkpoints)}")
        for record in checkpoints:
            lines.append(
                f"  {record.created_at.isoformat()} {record.step_kind} {record.status.value} "
                f"goal={record.goal_id}",
            )
        lines.append(f"Events: {len(events)}")
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines


def load_packages_file(path: Path) -> list[PackageSpec]:
    """Read a JSON list of packages, or an object with a ``packages`` list."""

    raw = json.loads(path.read_text("utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("packages")
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a JSON list of packages")
    packages: list[PackageSpec] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError(f"{path}: every package must be a JSON object")
        packages.append(PackageSpec.from_dict(item))
    return packages


def _parse_status(raw: str | None) -> BuildStatus | None:
    if raw is None:
        return None
    try:
        return BuildStatus(raw.strip().lower())
    except ValueError as error:
        allowed = ", ".join(item.value for item in BuildStatus)
        raise ValueError(f"Unsupported status: {raw}. Allowed: {allowed}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[FactoryRepository]:
    repository = FactoryRepository(db_path=settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
