"""Package registry collaborator: existence check and publish."""

from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "build-factory/0.1 (+package-registry-check)"


class PublishError(RuntimeError):
    """Publishing failed or is not configured."""


@runtime_checkable
class PackageRegistryClient(Protocol):
    def exists(self, name: str, version: str) -> bool:
        """True when ``name==version`` is already in the registry."""

    def publish(self, name: str, version: str, path: Path) -> None:
        """Publish the package built at ``path``."""


class HttpPackageRegistry:
    """Checks a JSON package index over HTTP and publishes via a command template."""

    def __init__(
        self,
        *,
        index_url: str,
        publish_command_template: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.index_url = index_url.rstrip("/")
        self.publish_command_template = publish_command_template
        self.timeout_seconds = timeout_seconds
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=httpx.HTTPTransport(retries=2),
            follow_redirects=True,
        )

    def close(self) -> None:
        self._client.close()

    def exists(self, name: str, version: str) -> bool:
        url = f"{self.index_url}/{name}/{version}/json"
        response = self._client.get(url)
        if response.status_code == httpx.codes.NOT_FOUND:
            return False
        response.raise_for_status()
        return True

    def publish(self, name: str, version: str, path: Path) -> None:
        template = self.publish_command_template.strip()
        if not template:
            raise PublishError(
                "No publish command configured. Set BUILD_FACTORY_PUBLISH_COMMAND_TEMPLATE.",
            )
        argv = shlex.split(
            template.format(
                name=shlex.quote(name),
                version=shlex.quote(version),
                path=shlex.quote(str(path)),
            ),
        )
        logger.info("Publishing %s==%s from %s", name, version, path)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=path,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds * 10,
                check=False,
            )
        except FileNotFoundError as error:
            raise PublishError(f"Publish command not found: {argv[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise PublishError(f"Publish of {name}=={version} timed out") from error
        if completed.returncode != 0:
            raise PublishError(
                f"Publish of {name}=={version} failed with exit code {completed.returncode}: "
                f"{(completed.stderr or completed.stdout).strip()}",
            )


class DryRunPackageRegistry:
    """Registry that never finds anything and records publishes in memory."""

    def __init__(self) -> None:
        self.published: dict[str, str] = {}

    def exists(self, name: str, version: str) -> bool:
        return self.published.get(name) == version

    def publish(self, name: str, version: str, path: Path) -> None:
        logger.info("Dry run: would publish %s==%s from %s", name, version, path)
        self.published[name] = version
