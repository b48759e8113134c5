"""Long-running build orchestrator.

Owns the build queue. Admits ready packages up to a concurrency cap, hands
each one to a build runner on a thread pool, and folds the runner's outcome
back into package status. Control arrives as persisted signals consumed in
arrival order; a run closes itself as ``continued`` after enough builds or
wall time and the next run picks up the same queue.
"""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from build_factory.config import Settings
from build_factory.orchestrator.models import (
    BuildOutcome,
    BuildStatus,
    OrchestratorSignal,
    OrchestratorStatus,
    OutcomeKind,
    PackageEntry,
    PackageSpec,
    RunStatus,
    SignalKind,
)
from build_factory.orchestrator.queue import BuildQueue, MergeReport
from build_factory.retry_classifier import parse_duration
from build_factory.storage.common import utc_now
from build_factory.storage.repository import FactoryRepository

logger = logging.getLogger(__name__)

BuildRunner = Callable[[PackageSpec], BuildOutcome]


@dataclass(slots=True)
class OrchestratorRunResult:
    """Summary of one ``ContinuousBuildOrchestrator.run`` call."""

    started: bool
    status: RunStatus | None = None
    run_ids: list[str] = field(default_factory=list)
    completed_builds: int = 0
    published: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    rescheduled: int = 0
    reason: str | None = None


class ContinuousBuildOrchestrator:
    """Single-instance control loop over the persisted build queue."""

    def __init__(
        self,
        *,
        settings: Settings,
        repository: FactoryRepository,
        build_runner: BuildRunner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.build_runner = build_runner
        self.clock = clock
        self.queue = BuildQueue()
        self.max_concurrent = settings.orchestrator.max_concurrent
        self.paused = False
        self.draining = False
        self.stopping = False
        self.run_id: str | None = None
        self.completed_builds = 0
        self._run_started_at: datetime | None = None
        self._in_flight: dict[Future[BuildOutcome], str] = {}
        self._stop_signal_name: str | None = None

    # control surface

    def send_signal(self, kind: SignalKind, payload: dict[str, Any] | None = None) -> int:
        """Persist a signal; the running loop applies it on its next pass."""

        if kind == SignalKind.ADJUST_CONCURRENCY:
            _concurrency_from(payload or {})
        return self.repository.enqueue_signal(kind, payload)

    def status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            run_id=self.run_id,
            paused=self.paused,
            draining=self.draining,
            stopping=self.stopping,
            max_concurrent=self.max_concurrent,
            active_builds=self.queue.building(),
            counts=self.queue.counts(),
            blocked=self.queue.blocked(),
            completed_builds=self.completed_builds,
        )

    # main loop

    def run(
        self,
        packages: Iterable[PackageSpec] = (),
        *,
        max_idle_polls: int | None = None,
    ) -> OrchestratorRunResult:
        """Run until drained, stopped, or idle for ``max_idle_polls`` passes.

        With ``max_idle_polls=None`` the loop keeps waiting for signals while
        nothing is buildable.
        """

        result = OrchestratorRunResult(started=False)
        if not self._claim_run(result):
            existing = self.repository.running_run()
            result.reason = (
                f"Orchestrator run {existing.run_id} is already running"
                if existing is not None
                else "Another orchestrator run holds the running slot"
            )
            logger.warning(result.reason)
            return result
        result.started = True

        pool = ThreadPoolExecutor(
            max_workers=self.settings.orchestrator.worker_pool_size,
            thread_name_prefix="build",
        )
        try:
            self._load_queue(packages)
            with self._signal_handlers():
                status, reason = self._loop(pool, result, max_idle_polls=max_idle_polls)
        except BaseException as error:
            pool.shutdown(wait=True, cancel_futures=True)
            self._finish_run(RunStatus.FAILED, reason=f"{type(error).__name__}: {error}")
            raise
        pool.shutdown(wait=True)
        self._finish_run(status, reason=reason)
        result.status = status
        result.reason = reason
        return result

    def _loop(
        self,
        pool: ThreadPoolExecutor,
        result: OrchestratorRunResult,
        *,
        max_idle_polls: int | None,
    ) -> tuple[RunStatus, str | None]:
        poll_seconds = self.settings.orchestrator.poll_interval_seconds
        idle_polls = 0
        while True:
            for item in self.repository.consume_signals():
                self._apply_signal(item)
            if self._stop_signal_name is not None and not self.stopping:
                logger.warning("Received %s, requesting emergency stop", self._stop_signal_name)
                self.stopping = True

            self._collect(block=False, result=result)

            if self.stopping and not self._in_flight:
                return RunStatus.STOPPED, self._stop_signal_name or SignalKind.EMERGENCY_STOP.value
            if self.draining and not self._in_flight:
                return RunStatus.DRAINED, SignalKind.DRAIN.value

            rotating = self._should_continue_as_new()
            if rotating and not self._in_flight:
                self._continue_as_new(result)
                rotating = False

            admitted = 0
            if not (self.paused or self.draining or self.stopping or rotating):
                admitted = self._admit(pool)

            if not self._in_flight and admitted == 0:
                idle_polls += 1
                if self._idle_exit_allowed(idle_polls, max_idle_polls):
                    return RunStatus.COMPLETED, "idle"
                self._sleep(poll_seconds)
                continue
            idle_polls = 0
            self._collect(block=True, result=result, timeout=poll_seconds)

    def _admit(self, pool: ThreadPoolExecutor) -> int:
        admitted = 0
        for entry in self.queue.eligible(now=self.clock()):
            if self.queue.building_count() >= self.max_concurrent:
                break
            self.queue.mark_building(entry.name)
            self._persist(entry, "build_started", BuildStatus.PENDING, {"attempt": entry.attempts + 1})
            logger.info("Admitting %s (attempt %s)", entry.name, entry.attempts + 1)
            future = pool.submit(self.build_runner, entry.package)
            self._in_flight[future] = entry.name
            admitted += 1
        return admitted

    def _collect(
        self,
        *,
        block: bool,
        result: OrchestratorRunResult,
        timeout: float = 0.0,
    ) -> None:
        if not self._in_flight:
            return
        done, _ = wait(
            list(self._in_flight),
            timeout=timeout if block else 0,
            return_when=FIRST_COMPLETED,
        )
        for future in done:
            name = self._in_flight.pop(future)
            try:
                outcome = future.result()
            except Exception as error:  # noqa: BLE001
                logger.exception("Build runner for %s raised", name)
                outcome = BuildOutcome(
                    package_name=name,
                    kind=OutcomeKind.FAILED,
                    error=f"{type(error).__name__}: {error}",
                    failed_phase="build",
                )
            self._handle_outcome(name, outcome, result)

    def _handle_outcome(self, name: str, outcome: BuildOutcome, result: OrchestratorRunResult) -> None:
        """Fold a terminal build outcome into the queue. Only place statuses change after admission."""

        if outcome.kind == OutcomeKind.PUBLISHED:
            entry = self.queue.mark_published(name)
            self._persist(entry, "published", BuildStatus.BUILDING, {"skipped": outcome.skipped})
            result.published.append(name)
            self._count_completed_build(result)
            return

        if outcome.kind == OutcomeKind.RESCHEDULED:
            delay = parse_duration(outcome.next_retry_delay or "")
            if delay is None:
                delay = self.settings.provider.default_retry_delay_seconds
            entry = self.queue.reschedule(
                name,
                run_after=self.clock() + timedelta(seconds=delay),
                error=outcome.error,
                count_attempt=False,
            )
            self._persist(
                entry,
                "rate_limited",
                BuildStatus.BUILDING,
                {"next_retry_delay": f"{delay}s", "error": outcome.error},
            )
            logger.warning("Build of %s rate limited, retrying in %ss", name, delay)
            result.rescheduled += 1
            return

        current = self.queue.get(name)
        attempts = (current.attempts if current is not None else 0) + 1
        max_retries = self.settings.orchestrator.max_build_retries
        details = {"error": outcome.error, "failed_phase": outcome.failed_phase, "attempt": attempts}
        if attempts < max_retries:
            backoff = self.settings.orchestrator.build_retry_base_seconds * 2 ** (attempts - 1)
            entry = self.queue.reschedule(
                name,
                run_after=self.clock() + timedelta(seconds=backoff),
                error=outcome.error,
                count_attempt=True,
            )
            entry.failed_phase = outcome.failed_phase
            self._persist(entry, "build_retry_scheduled", BuildStatus.BUILDING, {**details, "backoff_seconds": backoff})
            logger.warning(
                "Build of %s failed (attempt %s/%s), retrying in %ss: %s",
                name,
                attempts,
                max_retries,
                backoff,
                outcome.error,
            )
            return

        entry = self.queue.mark_failed(name, error=outcome.error, failed_phase=outcome.failed_phase)
        entry.attempts = attempts
        self._persist(entry, "build_failed", BuildStatus.BUILDING, details)
        logger.error("Build of %s failed permanently after %s attempts: %s", name, attempts, outcome.error)
        result.failed.append(name)
        self._count_completed_build(result)

    def _apply_signal(self, item: OrchestratorSignal) -> None:
        logger.info("Applying signal %s (id=%s)", item.kind.value, item.signal_id)
        if item.kind == SignalKind.NEW_PACKAGES:
            raw_packages = item.payload.get("packages", [])
            try:
                packages = [PackageSpec.from_dict(raw) for raw in raw_packages]
            except (TypeError, ValueError) as error:
                logger.error("Ignoring malformed new_packages signal %s: %s", item.signal_id, error)
                return
            self._merge(packages)
        elif item.kind == SignalKind.PAUSE:
            self.paused = True
        elif item.kind == SignalKind.RESUME:
            self.paused = False
        elif item.kind == SignalKind.DRAIN:
            self.draining = True
        elif item.kind == SignalKind.EMERGENCY_STOP:
            self.stopping = True
        elif item.kind == SignalKind.ADJUST_CONCURRENCY:
            try:
                self.max_concurrent = _concurrency_from(item.payload)
            except ValueError as error:
                logger.error("Ignoring adjust_concurrency signal %s: %s", item.signal_id, error)
                return
            self.repository.heartbeat_run(
                run_id=self._require_run_id(),
                completed_builds=self.completed_builds,
                max_concurrent=self.max_concurrent,
            )

    # queue persistence

    def _load_queue(self, packages: Iterable[PackageSpec]) -> None:
        self.queue = BuildQueue(self.repository.load_packages())
        for name in self.queue.recover_interrupted():
            entry = self.queue.get(name)
            if entry is not None:
                logger.warning("Recovered interrupted build of %s", name)
                self._persist(entry, "build_recovered", BuildStatus.BUILDING)
        self._merge(list(packages))

    def _merge(self, packages: list[PackageSpec]) -> None:
        merge_and_persist(self.queue, self.repository, packages)

    def _persist(
        self,
        entry: PackageEntry,
        event_type: str,
        status_from: BuildStatus | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.repository.save_package(
            entry,
            event_type=event_type,
            status_from=status_from,
            details=details,
        )

    # runs

    def _claim_run(self, result: OrchestratorRunResult) -> bool:
        run_id = f"run-{uuid4().hex[:12]}"
        if not self.repository.start_run(run_id=run_id, max_concurrent=self.max_concurrent):
            return False
        self.run_id = run_id
        self.completed_builds = 0
        self._run_started_at = self.clock()
        result.run_ids.append(run_id)
        logger.info("Started orchestrator run %s", run_id)
        return True

    def _finish_run(self, status: RunStatus, *, reason: str | None) -> None:
        self.repository.finish_run(
            run_id=self._require_run_id(),
            status=status,
            completed_builds=self.completed_builds,
            stop_reason=reason,
        )
        logger.info("Orchestrator run %s finished: %s (%s)", self.run_id, status.value, reason)

    def _should_continue_as_new(self) -> bool:
        limits = self.settings.orchestrator
        if self.completed_builds >= limits.builds_per_run:
            return True
        started = self._run_started_at
        return started is not None and (self.clock() - started).total_seconds() >= limits.max_run_seconds

    def _continue_as_new(self, result: OrchestratorRunResult) -> None:
        previous = self._require_run_id()
        self._finish_run(RunStatus.CONTINUED, reason=f"continued after {self.completed_builds} builds")
        if not self._claim_run(result):
            raise RuntimeError(f"Could not start a new run after {previous}")

    def _count_completed_build(self, result: OrchestratorRunResult) -> None:
        self.completed_builds += 1
        result.completed_builds += 1
        self.repository.heartbeat_run(
            run_id=self._require_run_id(),
            completed_builds=self.completed_builds,
            max_concurrent=self.max_concurrent,
        )

    def _idle_exit_allowed(self, idle_polls: int, max_idle_polls: int | None) -> bool:
        if max_idle_polls is None or idle_polls < max_idle_polls or self.paused:
            return False
        return not self._pending_retry()

    def _pending_retry(self) -> bool:
        """True while some pending package is only waiting out a backoff."""

        now = self.clock()
        return any(
            entry.status == BuildStatus.PENDING
            and entry.run_after is not None
            and entry.run_after > now
            for entry in self.queue.entries()
        )

    def _require_run_id(self) -> str:
        if self.run_id is None:
            raise RuntimeError("Orchestrator run has not been started")
        return self.run_id

    def _sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while self._stop_signal_name is None and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Not in main thread; OS signal handlers not installed")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def merge_and_persist(
    queue: BuildQueue,
    repository: FactoryRepository,
    packages: list[PackageSpec],
) -> MergeReport:
    """Merge packages into ``queue`` and save every entry the merge changed."""

    previous = {package.name: queue.status_of(package.name) for package in packages}
    report = queue.merge(packages)
    for event_type, names in (
        ("package_added", report.added),
        ("package_updated", report.updated),
        ("package_requeued", report.requeued),
    ):
        for name in names:
            entry = queue.get(name)
            if entry is not None:
                repository.save_package(entry, event_type=event_type, status_from=previous.get(name))
    if report.ignored:
        logger.info("Ignored duplicate packages: %s", ", ".join(report.ignored))
    return report


def _concurrency_from(payload: dict[str, Any]) -> int:
    raw = payload.get("max_concurrent", payload.get("n"))
    try:
        value = int(raw)
    except (TypeError, ValueError) as error:
        raise ValueError(f"adjust_concurrency needs an integer max_concurrent, got {raw!r}") from error
    if value < 1:
        raise ValueError(f"max_concurrent must be >= 1, got {value}")
    return value
