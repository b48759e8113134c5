from __future__ import annotations

import json
import shutil
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from build_factory import controllers
from build_factory.main import build_factory
from build_factory.orchestrator.build_job import PackageBuildJob
from build_factory.orchestrator.models import BuildStatus, CheckpointStatus, SignalKind
from build_factory.storage.repository import FactoryRepository

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Queue, Orchestrator, Checkpoints"),
]


def _invoke(*args: str):
    result = CliRunner().invoke(build_factory, list(args))
    assert result.exit_code == 0, result.output
    return result


def test_specs_list_shows_builtin_specs(tmp_path: Path) -> None:
    result = _invoke("specs", "list", "--db-path", str(tmp_path / "cli.db"))

    assert "Specs: 3" in result.output
    assert "package-build v1.0.0" in result.output
    assert "work kinds: gather_requirements, create_tasks, confirm_completion" in result.output


def test_packages_add_and_list(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    packages_file = tmp_path / "packages.json"
    packages_file.write_text(
        json.dumps({"packages": [{"name": "validator-base", "category": "validator", "priority": 2}]}),
    )

    added = _invoke(
        "packages",
        "add",
        "core-types",
        "--depends-on",
        "validator-base",
        "--category",
        "core",
        "--file",
        str(packages_file),
        "--db-path",
        db_path,
    )
    again = _invoke("packages", "add", "core-types", "--db-path", db_path)
    listed = _invoke("packages", "list", "--db-path", db_path)
    pending = _invoke("packages", "list", "--status", "published", "--db-path", db_path)

    assert "Packages queued: added=2 updated=0 requeued=0 ignored=0" in added.output
    assert "ignored=1" in again.output
    assert "Packages: 2" in listed.output
    assert "core-types==0.1.0 status=pending priority=0 category=core" in listed.output
    assert "deps=validator-base" in listed.output
    assert "Packages: 0" in pending.output


def test_packages_add_without_names_is_a_no_op(tmp_path: Path) -> None:
    result = _invoke("packages", "add", "--db-path", str(tmp_path / "cli.db"))

    assert "No packages given." in result.output


def test_packages_add_while_running_sends_signal(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = FactoryRepository(db_path)
    repository.init_schema()
    repository.start_run(run_id="run-live", max_concurrent=1)

    result = _invoke("packages", "add", "late", "--db-path", str(db_path))

    assert "Sent new_packages signal" in result.output
    assert "run-live" in result.output
    (signal,) = repository.consume_signals()
    assert signal.kind == SignalKind.NEW_PACKAGES
    assert signal.payload["packages"][0]["name"] == "late"
    assert repository.load_packages() == []
    repository.close()


def test_orchestrator_signal_and_status(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    status_before = _invoke("orchestrator", "status", "--db-path", db_path)
    signal = _invoke(
        "orchestrator",
        "signal",
        "adjust_concurrency",
        "--max-concurrent",
        "2",
        "--db-path",
        db_path,
    )

    assert "Orchestrator: never started" in status_before.output
    assert "Queue: pending=0 building=0 published=0 failed=0" in status_before.output
    assert "kind=adjust_concurrency target=next run" in signal.output


def test_orchestrator_signal_validates_parameters(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    missing = runner.invoke(
        build_factory,
        ["orchestrator", "signal", "adjust_concurrency", "--db-path", db_path],
    )
    unknown = runner.invoke(build_factory, ["orchestrator", "signal", "explode", "--db-path", db_path])

    assert missing.exit_code != 0
    assert "requires --max-concurrent" in missing.output
    assert unknown.exit_code != 0


def test_checkpoints_show_reports_resume_point(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = FactoryRepository(db_path)
    repository.init_schema()
    for kind in ("scaffold", "implement"):
        repository.record_checkpoint(
            package_name="pkg",
            goal_id="pkg@0.1.0",
            step_kind=kind,
            status=CheckpointStatus.COMPLETED,
            data={"content": {}},
        )
    repository.record_checkpoint(
        package_name="pkg",
        goal_id="pkg@0.1.0",
        step_kind="test",
        status=CheckpointStatus.FAILED,
        data={"error": "2 tests failed"},
    )
    repository.close()

    result = _invoke("checkpoints", "show", "pkg", "--db-path", str(db_path))
    missing = _invoke("checkpoints", "show", "other", "--db-path", str(db_path))

    assert "Completed phases: scaffold, implement" in result.output
    assert "Completion: 50%" in result.output
    assert "Resume phase: test" in result.output
    assert "Coarse resume phase: implement" in result.output
    assert '"error": "2 tests failed"' in result.output
    assert "Checkpoints: 3" in result.output
    assert "No build history for package: other" in missing.output


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_orchestrator_run_builds_queue_with_echo_agent(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    echo_agent,
) -> None:
    def direct_build_runner(*, settings, registry, repository, publisher):
        def run(package):
            return PackageBuildJob(
                package=package,
                settings=settings,
                registry=registry,
                repository=repository,
                publisher=publisher,
            ).run()

        return run

    monkeypatch.setattr(controllers, "flow_build_runner", direct_build_runner)
    monkeypatch.setenv("BUILD_FACTORY_WORKSPACE_ROOT", str(tmp_path / "workspace"))
    db_path = tmp_path / "cli.db"
    packages_file = tmp_path / "packages.json"
    packages_file.write_text(
        json.dumps(
            [
                {"name": "core-types", "category": "core", "dependencies": ["validator-base"]},
                {"name": "validator-base", "category": "validator"},
            ],
        ),
    )

    result = _invoke(
        "orchestrator",
        "run",
        "--packages-file",
        str(packages_file),
        "--max-idle-polls",
        "1",
        "--dry-run-publish",
        "--db-path",
        str(db_path),
    )

    assert "Orchestrator finished: status=completed reason=idle" in result.output
    assert "Builds: completed=2 published=2 failed=0 rescheduled=0" in result.output
    repository = FactoryRepository(db_path)
    statuses = {entry.name: entry.status for entry in repository.load_packages()}
    steps = [record.step_kind for record in repository.list_checkpoints("core-types")]
    repository.close()
    assert statuses == {"core-types": BuildStatus.PUBLISHED, "validator-base": BuildStatus.PUBLISHED}
    assert steps == ["scaffold", "implement", "test", "quality_check", "publish"]

    status = _invoke("orchestrator", "status", "--db-path", str(db_path))
    assert "status=completed" in status.output
    assert "Stop reason: idle" in status.output

    second = _invoke("checkpoints", "show", "core-types", "--db-path", str(db_path))
    assert "Coarse resume phase: complete" in second.output
