"""Persistent store for package status, checkpoints, signals and orchestrator runs."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from build_factory.orchestrator.models import (
    BuildStatus,
    CheckpointRecord,
    CheckpointStatus,
    OrchestratorRunView,
    OrchestratorSignal,
    PackageEntry,
    PackageEventView,
    PackageSpec,
    RunStatus,
    SignalKind,
)
from build_factory.storage.common import build_sqlite_engine, ensure_utc, utc_now
from build_factory.storage.sqlmodel_models import (
    BuildCheckpoint,
    OrchestratorRun,
    OrchestratorSignalRow,
    PackageEvent,
    PackageRow,
)


class FactoryRepository:
    """Persistence facade backed by SQLModel + SQLite.

    Checkpoints, package events and signals are append-only. Package rows hold
    the orchestrator's latest view of each package and are rewritten in place.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    # packages

    def save_package(
        self,
        entry: PackageEntry,
        *,
        event_type: str,
        status_from: BuildStatus | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write the package row and its status event in one transaction."""

        now = utc_now()
        package = entry.package
        with Session(self.engine) as session:
            row = session.get(PackageRow, package.name)
            if row is None:
                row = PackageRow(
                    name=package.name,
                    status=entry.status.value,
                    created_at=now,
                    updated_at=now,
                )
            row.priority = package.priority
            row.category = package.category
            row.version = package.version
            row.dependencies_json = json.dumps(sorted(package.dependencies))
            row.status = entry.status.value
            row.attempts = entry.attempts
            row.run_after = entry.run_after
            row.last_error = entry.last_error
            row.failed_phase = entry.failed_phase
            row.updated_at = now
            session.add(row)
            self._add_event(
                session=session,
                package_name=package.name,
                event_type=event_type,
                status_from=status_from,
                status_to=entry.status,
                details=details or {},
            )
            session.commit()

    def load_packages(self, *, status: BuildStatus | None = None) -> list[PackageEntry]:
        with Session(self.engine) as session:
            query = select(PackageRow)
            if status is not None:
                query = query.where(PackageRow.status == status.value)
            rows = session.exec(query.order_by(col(PackageRow.created_at), col(PackageRow.name))).all()
            return [_to_entry(row) for row in rows]

    def package_events(self, package_name: str) -> list[PackageEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PackageEvent)
                .where(PackageEvent.package_name == package_name)
                .order_by(col(PackageEvent.event_id)),
            ).all()
            return [
                PackageEventView(
                    package_name=row.package_name,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    details=json.loads(row.details_json),
                    created_at=ensure_utc(row.created_at),
                )
                for row in rows
            ]

    # checkpoints

    def record_checkpoint(  # noqa: PLR0913
        self,
        *,
        package_name: str,
        goal_id: str,
        step_kind: str,
        status: CheckpointStatus,
        data: dict[str, Any],
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                BuildCheckpoint(
                    package_name=package_name,
                    goal_id=goal_id,
                    step_kind=step_kind,
                    status=status.value,
                    data_json=json.dumps(data, ensure_ascii=False, sort_keys=True, default=str),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_checkpoints(self, package_name: str) -> list[CheckpointRecord]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(BuildCheckpoint)
                .where(BuildCheckpoint.package_name == package_name)
                .order_by(col(BuildCheckpoint.checkpoint_id)),
            ).all()
            return [
                CheckpointRecord(
                    package_name=row.package_name,
                    goal_id=row.goal_id,
                    step_kind=row.step_kind,
                    status=CheckpointStatus(row.status),
                    data=json.loads(row.data_json),
                    created_at=ensure_utc(row.created_at),
                )
                for row in rows
            ]

    # orchestrator runs

    def start_run(self, *, run_id: str, max_concurrent: int) -> bool:
        """Claim the single running slot. Returns False if another run holds it."""

        now = utc_now()
        with Session(self.engine) as session:
            session.add(
                OrchestratorRun(
                    run_id=run_id,
                    status=RunStatus.RUNNING.value,
                    max_concurrent=max_concurrent,
                    started_at=now,
                    heartbeat_at=now,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def running_run(self) -> OrchestratorRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(OrchestratorRun).where(OrchestratorRun.status == RunStatus.RUNNING.value),
            ).one_or_none()
            return _to_run_view(row) if row is not None else None

    def latest_run(self) -> OrchestratorRunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(OrchestratorRun).order_by(col(OrchestratorRun.started_at).desc()).limit(1),
            ).first()
            return _to_run_view(row) if row is not None else None

    def heartbeat_run(self, *, run_id: str, completed_builds: int, max_concurrent: int) -> None:
        with Session(self.engine) as session:
            row = session.get(OrchestratorRun, run_id)
            if row is None:
                raise RuntimeError(f"Orchestrator run not found: {run_id}")
            row.heartbeat_at = utc_now()
            row.completed_builds = completed_builds
            row.max_concurrent = max_concurrent
            session.add(row)
            session.commit()

    def finish_run(
        self,
        *,
        run_id: str,
        status: RunStatus,
        completed_builds: int,
        stop_reason: str | None = None,
    ) -> None:
        if status == RunStatus.RUNNING:
            raise ValueError("finish_run requires a terminal status")
        with Session(self.engine) as session:
            row = session.get(OrchestratorRun, run_id)
            if row is None:
                raise RuntimeError(f"Orchestrator run not found: {run_id}")
            row.status = status.value
            row.completed_builds = completed_builds
            row.finished_at = utc_now()
            row.stop_reason = stop_reason
            session.add(row)
            session.commit()

    # signals

    def enqueue_signal(self, kind: SignalKind, payload: dict[str, Any] | None = None) -> int:
        with Session(self.engine) as session:
            row = OrchestratorSignalRow(
                kind=kind.value,
                payload_json=json.dumps(payload or {}, sort_keys=True),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.signal_id is None:
                raise RuntimeError("Signal id was not assigned")
            return row.signal_id

    def consume_signals(self) -> list[OrchestratorSignal]:
        """Return unconsumed signals in arrival order and mark them consumed."""

        now = utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(OrchestratorSignalRow)
                .where(col(OrchestratorSignalRow.consumed_at).is_(None))
                .order_by(col(OrchestratorSignalRow.signal_id)),
            ).all()
            signals = [
                OrchestratorSignal(
                    kind=SignalKind(row.kind),
                    payload=json.loads(row.payload_json),
                    signal_id=row.signal_id,
                )
                for row in rows
            ]
            for row in rows:
                row.consumed_at = now
                session.add(row)
            session.commit()
            return signals

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        package_name: str,
        event_type: str,
        status_from: BuildStatus | None,
        status_to: BuildStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            PackageEvent(
                package_name=package_name,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str),
                created_at=utc_now(),
            ),
        )


def _to_entry(row: PackageRow) -> PackageEntry:
    return PackageEntry(
        package=PackageSpec(
            name=row.name,
            priority=row.priority,
            dependencies=frozenset(json.loads(row.dependencies_json)),
            category=row.category,
            version=row.version,
        ),
        status=BuildStatus(row.status),
        attempts=row.attempts,
        run_after=ensure_utc(row.run_after),
        last_error=row.last_error,
        failed_phase=row.failed_phase,
    )


def _to_run_view(row: OrchestratorRun) -> OrchestratorRunView:
    finished: datetime | None = ensure_utc(row.finished_at)
    return OrchestratorRunView(
        run_id=row.run_id,
        status=RunStatus(row.status),
        started_at=ensure_utc(row.started_at),
        finished_at=finished,
        completed_builds=row.completed_builds,
        max_concurrent=row.max_concurrent,
        stop_reason=row.stop_reason,
    )
