"""Dependency-aware build queue owned by the orchestrator."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from build_factory.orchestrator.models import BuildStatus, PackageEntry, PackageSpec

DEFAULT_LAYER = 3

CATEGORY_LAYERS: dict[str, int] = {
    "validator": 0,
    "core": 1,
    "utility": 2,
    "service": 3,
    "ui": 4,
    "suite": 5,
}


def category_to_layer(category: str) -> int:
    """Foundational categories get lower layers and build first."""

    return CATEGORY_LAYERS.get(category.strip().lower(), DEFAULT_LAYER)


@dataclass(slots=True)
class MergeReport:
    """Result of merging a batch of incoming packages into the queue."""

    added: list[str]
    updated: list[str]
    requeued: list[str]
    ignored: list[str]


class BuildQueue:
    """Pending packages with declared dependencies, priorities and build status.

    Not thread-safe: only the orchestrator loop touches it.
    """

    def __init__(self, entries: Iterable[PackageEntry] = ()) -> None:
        self._entries: dict[str, PackageEntry] = {}
        for entry in entries:
            self._entries[entry.name] = entry

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, name: str) -> PackageEntry | None:
        return self._entries.get(name)

    def entries(self) -> list[PackageEntry]:
        return list(self._entries.values())

    def status_of(self, name: str) -> BuildStatus | None:
        entry = self._entries.get(name)
        return entry.status if entry is not None else None

    def merge(self, packages: Iterable[PackageSpec]) -> MergeReport:
        """Add new packages; let a higher priority replace a pending duplicate.

        Failed packages that are sent again go back to pending with a fresh
        retry budget. Building and published packages are left alone.
        """

        report = MergeReport(added=[], updated=[], requeued=[], ignored=[])
        for package in packages:
            existing = self._entries.get(package.name)
            if existing is None:
                self._entries[package.name] = PackageEntry(package=package)
                report.added.append(package.name)
                continue
            if existing.status == BuildStatus.FAILED:
                self._entries[package.name] = PackageEntry(package=package)
                report.requeued.append(package.name)
                continue
            if existing.status == BuildStatus.PENDING and package.priority > existing.package.priority:
                existing.package = package
                report.updated.append(package.name)
                continue
            report.ignored.append(package.name)
        return report

    def is_ready(self, name: str, *, now: datetime) -> bool:
        """Pending, past its backoff, and every dependency published."""

        entry = self._entries.get(name)
        if entry is None or entry.status != BuildStatus.PENDING:
            return False
        if entry.run_after is not None and entry.run_after > now:
            return False
        return all(
            self.status_of(dependency) == BuildStatus.PUBLISHED
            for dependency in entry.package.dependencies
        )

    def eligible(self, *, now: datetime) -> list[PackageEntry]:
        """Ready packages in admission order: priority, then layer, then name."""

        ready = [entry for entry in self._entries.values() if self.is_ready(entry.name, now=now)]
        return sorted(
            ready,
            key=lambda entry: (
                -entry.package.priority,
                category_to_layer(entry.package.category),
                entry.name,
            ),
        )

    def blocked(self) -> list[str]:
        """Pending packages waiting on a dependency that is not published."""

        return sorted(
            entry.name
            for entry in self._entries.values()
            if entry.status == BuildStatus.PENDING
            and any(
                self.status_of(dependency) != BuildStatus.PUBLISHED
                for dependency in entry.package.dependencies
            )
        )

    def building(self) -> list[str]:
        return [entry.name for entry in self._entries.values() if entry.status == BuildStatus.BUILDING]

    def building_count(self) -> int:
        return len(self.building())

    def counts(self) -> dict[str, int]:
        result = {status.value: 0 for status in BuildStatus}
        for entry in self._entries.values():
            result[entry.status.value] += 1
        return result

    def has_work(self) -> bool:
        return any(
            entry.status in {BuildStatus.PENDING, BuildStatus.BUILDING}
            for entry in self._entries.values()
        )

    def mark_building(self, name: str) -> PackageEntry:
        entry = self._require(name, BuildStatus.PENDING)
        entry.status = BuildStatus.BUILDING
        entry.run_after = None
        return entry

    def mark_published(self, name: str) -> PackageEntry:
        entry = self._require(name, BuildStatus.BUILDING)
        entry.status = BuildStatus.PUBLISHED
        entry.attempts = 0
        entry.last_error = None
        entry.failed_phase = None
        return entry

    def mark_failed(self, name: str, *, error: str | None, failed_phase: str | None) -> PackageEntry:
        entry = self._require(name, BuildStatus.BUILDING)
        entry.status = BuildStatus.FAILED
        entry.last_error = error
        entry.failed_phase = failed_phase
        return entry

    def reschedule(
        self,
        name: str,
        *,
        run_after: datetime,
        error: str | None,
        count_attempt: bool,
    ) -> PackageEntry:
        """Return a building package to pending until ``run_after``."""

        entry = self._require(name, BuildStatus.BUILDING)
        entry.status = BuildStatus.PENDING
        entry.run_after = run_after
        entry.last_error = error
        if count_attempt:
            entry.attempts += 1
        return entry

    def recover_interrupted(self) -> list[str]:
        """Reset packages left ``building`` by a crashed run back to pending."""

        recovered: list[str] = []
        for name, entry in self._entries.items():
            if entry.status == BuildStatus.BUILDING:
                self._entries[name] = replace(entry, status=BuildStatus.PENDING)
                recovered.append(name)
        return recovered

    def _require(self, name: str, expected: BuildStatus) -> PackageEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise KeyError(f"Unknown package: {name}")
        if entry.status != expected:
            raise ValueError(
                f"Package {name} is {entry.status.value}, expected {expected.value}",
            )
        return entry
