from __future__ import annotations

import sys
from pathlib import Path

import allure
import httpx
import pytest

from build_factory.orchestrator.publisher import (
    DryRunPackageRegistry,
    HttpPackageRegistry,
    PublishError,
)

pytestmark = [
    allure.epic("Continuous Build Orchestrator"),
    allure.feature("Package Registry"),
]


def _registry(handler, **kwargs) -> HttpPackageRegistry:
    return HttpPackageRegistry(
        index_url="https://index.example/pypi/",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def test_exists_maps_404_to_false_and_200_to_true() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.path.endswith("/known/1.0.0/json"):
            return httpx.Response(200, json={"info": {"name": "known"}})
        return httpx.Response(404)

    registry = _registry(handler)

    assert registry.exists("known", "1.0.0") is True
    assert registry.exists("unknown", "1.0.0") is False
    assert seen[0] == "https://index.example/pypi/known/1.0.0/json"


def test_exists_raises_on_server_error() -> None:
    registry = _registry(lambda request: httpx.Response(503))

    with pytest.raises(httpx.HTTPStatusError):
        registry.exists("pkg", "0.1.0")


def test_publish_without_command_raises(tmp_path: Path) -> None:
    registry = _registry(lambda request: httpx.Response(404))

    with pytest.raises(PublishError, match="No publish command configured"):
        registry.publish("pkg", "0.1.0", tmp_path)


def test_publish_runs_command_in_package_dir(tmp_path: Path) -> None:
    registry = _registry(
        lambda request: httpx.Response(404),
        publish_command_template=(
            f"{sys.executable} -c \"import pathlib; pathlib.Path('published.txt')"
            ".write_text('{name}=={version}')\""
        ),
    )

    registry.publish("pkg", "0.1.0", tmp_path)

    assert (tmp_path / "published.txt").read_text() == "pkg==0.1.0"


def test_publish_failure_carries_exit_code(tmp_path: Path) -> None:
    registry = _registry(
        lambda request: httpx.Response(404),
        publish_command_template=f"{sys.executable} -c \"raise SystemExit(3)\"",
    )

    with pytest.raises(PublishError, match="exit code 3"):
        registry.publish("pkg", "0.1.0", tmp_path)


def test_dry_run_registry_records_publishes(tmp_path: Path) -> None:
    registry = DryRunPackageRegistry()

    assert registry.exists("pkg", "0.1.0") is False
    registry.publish("pkg", "0.1.0", tmp_path)

    assert registry.exists("pkg", "0.1.0") is True
    assert registry.exists("pkg", "0.2.0") is False
