"""Prefect wrappers around package builds.

The build job and the continuous loop stay plain classes; Prefect supplies
run tracking for each build and each agent step.
"""

from __future__ import annotations

import logging
import time

from prefect import flow, task

from build_factory.agents.base import Agent, AgentRequest
from build_factory.config import Settings
from build_factory.engine.models import AgentResponse
from build_factory.orchestrator.build_job import PackageBuildJob
from build_factory.orchestrator.continuous import BuildRunner
from build_factory.orchestrator.models import BuildOutcome, PackageSpec
from build_factory.orchestrator.publisher import PackageRegistryClient
from build_factory.registry import Registry
from build_factory.storage.repository import FactoryRepository

logger = logging.getLogger(__name__)


@task(name="agent_step")
def run_agent_step(agent: Agent, request: AgentRequest) -> AgentResponse:
    """Run one agent invocation. Retries belong to the spec, not to Prefect."""

    started = time.monotonic()
    response = agent.execute(request)
    logger.info(
        "Agent step completed: work_kind=%s step_id=%s status=%s elapsed=%.1fs",
        request.work_kind,
        request.step_id,
        response.status.value,
        time.monotonic() - started,
    )
    return response


@flow(name="package_build", validate_parameters=False)
def package_build_flow(
    *,
    package: PackageSpec,
    settings: Settings,
    registry: Registry,
    repository: FactoryRepository,
    publisher: PackageRegistryClient,
) -> BuildOutcome:
    """Build, test and publish one package, resuming from its checkpoints."""

    job = PackageBuildJob(
        package=package,
        settings=settings,
        registry=registry,
        repository=repository,
        publisher=publisher,
        step_runner=run_agent_step,
    )
    outcome = job.run()
    logger.info("Package %s finished: %s", package.name, outcome.kind.value)
    return outcome


def flow_build_runner(
    *,
    settings: Settings,
    registry: Registry,
    repository: FactoryRepository,
    publisher: PackageRegistryClient,
) -> BuildRunner:
    """Build runner for ``ContinuousBuildOrchestrator`` backed by the Prefect flow."""

    def run(package: PackageSpec) -> BuildOutcome:
        return package_build_flow(
            package=package,
            settings=settings,
            registry=registry,
            repository=repository,
            publisher=publisher,
        )

    return run
