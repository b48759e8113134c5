"""CLI entrypoint for build-factory."""

import logging
from pathlib import Path

import rich_click as click

from build_factory import __version__
from build_factory.controllers import (
    CheckpointsShowCommand,
    FactoryCliController,
    OrchestratorRunCommand,
    OrchestratorSignalCommand,
    OrchestratorStatusCommand,
    PackagesAddCommand,
    PackagesListCommand,
    SpecsListCommand,
)
from build_factory.orchestrator.models import BuildStatus, SignalKind

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FactoryCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="build-factory")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable debug logging.")
def build_factory(verbose: bool) -> None:
    """Autonomous package build factory.

    Queue packages, run the **continuous orchestrator**, and inspect build
    checkpoints.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@build_factory.group()
def specs() -> None:
    """Decision spec commands."""


@specs.command("list")
@_DB_PATH_OPTION
def specs_list(db_path: Path | None) -> None:
    """List registered specs and the work kinds they request."""

    _emit_lines(CONTROLLER.list_specs(SpecsListCommand(db_path=db_path)))


@build_factory.group()
def packages() -> None:
    """Build queue commands."""


@packages.command("add")
@_DB_PATH_OPTION
@click.argument("names", nargs=-1)
@click.option(
    "--file",
    "packages_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with a list of packages.",
)
@click.option("--priority", type=int, default=0, show_default=True, help="Higher builds first.")
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Package that must be published first. Can be repeated.",
)
@click.option("--category", default="service", show_default=True, help="Layer category.")
@click.option("--version", "package_version", default="0.1.0", show_default=True)
def packages_add(  # noqa: PLR0913
    db_path: Path | None,
    names: tuple[str, ...],
    packages_file: Path | None,
    priority: int,
    dependencies: tuple[str, ...],
    category: str,
    package_version: str,
) -> None:
    """Add packages to the build queue.

    When an orchestrator is running, the packages are sent as a `new_packages`
    signal instead.
    """

    _emit_lines(
        CONTROLLER.add_packages(
            PackagesAddCommand(
                db_path=db_path,
                names=names,
                packages_file=packages_file,
                priority=priority,
                dependencies=dependencies,
                category=category,
                version=package_version,
            ),
        ),
    )


@packages.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in BuildStatus]),
    default=None,
    help="Only show packages with this status.",
)
def packages_list(db_path: Path | None, status: str | None) -> None:
    """List queued packages with their build status."""

    _emit_lines(CONTROLLER.list_packages(PackagesListCommand(db_path=db_path, status=status)))


@build_factory.group()
def orchestrator() -> None:
    """Continuous build orchestrator commands."""


@orchestrator.command("run")
@_DB_PATH_OPTION
@click.option(
    "--packages-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with packages to seed the queue with.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many idle polls. Default: keep waiting for signals.",
)
@click.option(
    "--dry-run-publish/--publish",
    default=False,
    show_default=True,
    help="Record publishes in memory instead of calling the registry.",
)
def orchestrator_run(
    db_path: Path | None,
    packages_file: Path | None,
    max_idle_polls: int | None,
    dry_run_publish: bool,
) -> None:
    """Run the continuous build orchestrator.

    Only one orchestrator runs per database; a second `run` exits immediately.
    """

    try:
        lines = CONTROLLER.run_orchestrator(
            OrchestratorRunCommand(
                db_path=db_path,
                packages_file=packages_file,
                max_idle_polls=max_idle_polls,
                dry_run_publish=dry_run_publish,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@orchestrator.command("status")
@_DB_PATH_OPTION
def orchestrator_status(db_path: Path | None) -> None:
    """Show the latest orchestrator run and queue counts."""

    _emit_lines(CONTROLLER.status(OrchestratorStatusCommand(db_path=db_path)))


@orchestrator.command("signal")
@_DB_PATH_OPTION
@click.argument("kind", type=click.Choice([kind.value for kind in SignalKind]))
@click.option("--max-concurrent", type=int, default=None, help="For adjust_concurrency.")
@click.option(
    "--packages-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="For new_packages.",
)
def orchestrator_signal(
    db_path: Path | None,
    kind: str,
    max_concurrent: int | None,
    packages_file: Path | None,
) -> None:
    """Queue a control signal for the running orchestrator."""

    try:
        lines = CONTROLLER.send_signal(
            OrchestratorSignalCommand(
                db_path=db_path,
                kind=kind,
                max_concurrent=max_concurrent,
                packages_file=packages_file,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@build_factory.group()
def checkpoints() -> None:
    """Build checkpoint commands."""


@checkpoints.command("show")
@_DB_PATH_OPTION
@click.argument("package_name")
def checkpoints_show(db_path: Path | None, package_name: str) -> None:
    """Show checkpoints, events and the resume point of one package."""

    _emit_lines(
        CONTROLLER.show_checkpoints(
            CheckpointsShowCommand(db_path=db_path, package_name=package_name),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    build_factory()
