"""SQLModel ORM tables for the build factory store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel


class PackageRow(SQLModel, table=True):
    __tablename__ = "packages"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    priority: int = Field(default=0)
    category: str = Field(default="service")
    version: str = Field(default="0.1.0")
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    run_after: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    failed_phase: str | None = Field(default=None)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PackageEvent(SQLModel, table=True):
    __tablename__ = "package_events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    package_name: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BuildCheckpoint(SQLModel, table=True):
    __tablename__ = "build_checkpoints"  # type: ignore[bad-override]

    checkpoint_id: int | None = Field(default=None, primary_key=True)
    package_name: str = Field(index=True)
    goal_id: str
    step_kind: str
    status: str
    data_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrchestratorRun(SQLModel, table=True):
    __tablename__ = "orchestrator_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_orchestrator_runs_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    run_id: str = Field(primary_key=True)
    status: str
    max_concurrent: int
    completed_builds: int = Field(default=0)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    stop_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class OrchestratorSignalRow(SQLModel, table=True):
    __tablename__ = "orchestrator_signals"  # type: ignore[bad-override]

    signal_id: int | None = Field(default=None, primary_key=True)
    kind: str
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    consumed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
