"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from build_factory.config import Settings
from build_factory.storage.repository import FactoryRepository
from tests.helpers import ECHO_AGENT_COMMAND_TEMPLATE, fast_settings


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return fast_settings(tmp_path)


@pytest.fixture()
def repository(settings: Settings) -> Iterator[FactoryRepository]:
    repo = FactoryRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def echo_agent(monkeypatch):
    """Monkeypatch Settings.from_env to run the echo agent with fast orchestrator polling."""
    original_from_env = Settings.from_env

    def _patched_from_env(db_path=None):
        settings = original_from_env(db_path=db_path)
        return replace(
            settings,
            agent=replace(settings.agent, command_template=ECHO_AGENT_COMMAND_TEMPLATE),
            orchestrator=replace(
                settings.orchestrator,
                poll_interval_seconds=0.01,
                build_retry_base_seconds=0,
            ),
        )

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
