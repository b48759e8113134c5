"""Name-keyed registry for spec and agent factories plus shared services."""

from __future__ import annotations

import logging
from typing import Any

from build_factory.agents.base import Agent, AgentContext, AgentFactory
from build_factory.agents.cli_agent import CliAgentFactory
from build_factory.config import Settings
from build_factory.errors import ConfigurationError, DuplicateRegistrationError
from build_factory.specs import BUILTIN_SPEC_FACTORIES
from build_factory.specs.base import Spec, SpecContext, SpecFactory

logger = logging.getLogger(__name__)


class Registry:
    """Resolves specs by name and agents by work kind."""

    def __init__(self) -> None:
        self._spec_factories: dict[str, SpecFactory] = {}
        self._agent_factories: dict[str, AgentFactory] = {}
        self._storage: Any = None
        self._logger: logging.Logger | None = None

    def register_spec_factory(self, factory: SpecFactory) -> None:
        if factory.name in self._spec_factories:
            raise DuplicateRegistrationError(f'Spec factory "{factory.name}" already registered')
        self._spec_factories[factory.name] = factory
        logger.debug("Registered spec factory %s@%s", factory.name, factory.version)

    def register_agent_factory(self, factory: AgentFactory) -> None:
        if factory.name in self._agent_factories:
            raise DuplicateRegistrationError(f'Agent factory "{factory.name}" already registered')
        self._agent_factories[factory.name] = factory
        logger.debug("Registered agent factory %s", factory.name)

    def register_storage(self, storage: Any) -> None:
        if self._storage is not None:
            raise DuplicateRegistrationError("Storage already registered")
        self._storage = storage

    def register_logger(self, instance: logging.Logger) -> None:
        if self._logger is not None:
            raise DuplicateRegistrationError("Logger already registered")
        self._logger = instance

    @property
    def storage(self) -> Any:
        if self._storage is None:
            raise ConfigurationError("Storage not registered")
        return self._storage

    @property
    def logger(self) -> logging.Logger:
        if self._logger is None:
            raise ConfigurationError("Logger not registered")
        return self._logger

    def spec_factory(self, name: str) -> SpecFactory:
        factory = self._spec_factories.get(name)
        if factory is None:
            raise ConfigurationError(f'Spec factory "{name}" not registered')
        return factory

    def agent_factory_for(self, work_kind: str) -> AgentFactory:
        for factory in self._agent_factories.values():
            if factory.supports(work_kind):
                return factory
        raise ConfigurationError(f'No agent factory found supporting work kind "{work_kind}"')

    def create_spec_context(self, config: dict[str, Any] | None = None) -> SpecContext:
        return SpecContext(storage=self.storage, logger=self.logger, config=dict(config or {}))

    def create_agent_context(
        self,
        api_keys: dict[str, str] | None = None,
        config: dict[str, Any] | None = None,
    ) -> AgentContext:
        return AgentContext(
            api_keys=dict(api_keys or {}),
            config=dict(config or {}),
            storage=self._storage,
            logger=self._logger,
        )

    def create_spec(self, name: str, config: dict[str, Any] | None = None) -> Spec:
        """Validate config against the named factory and build a spec."""

        factory = self.spec_factory(name)
        config = dict(config or {})
        factory.validate(config)
        return factory.create(self.create_spec_context(config))

    def create_agent(
        self,
        work_kind: str,
        *,
        api_keys: dict[str, str] | None = None,
        config: dict[str, Any] | None = None,
    ) -> Agent:
        factory = self.agent_factory_for(work_kind)
        return factory.create(self.create_agent_context(api_keys, config))

    def list_specs(self) -> list[dict[str, Any]]:
        return [factory.describe().to_dict() for factory in self._spec_factories.values()]

    def spec_names(self) -> tuple[str, ...]:
        return tuple(self._spec_factories)

    def agent_names(self) -> tuple[str, ...]:
        return tuple(self._agent_factories)


def build_default_registry(*, storage: Any, registry_logger: logging.Logger | None = None) -> Registry:
    """Registry wired with the built-in specs and the CLI agent."""

    registry = Registry()
    registry.register_storage(storage)
    registry.register_logger(registry_logger or logging.getLogger("build_factory.specs"))
    for factory_cls in BUILTIN_SPEC_FACTORIES:
        registry.register_spec_factory(factory_cls())
    registry.register_agent_factory(CliAgentFactory())
    return registry


def agent_config_from_settings(settings: Settings) -> dict[str, Any]:
    """CLI agent config in the shape ``CliAgentFactory.create`` reads."""

    return {
        "command_template": settings.agent.command_template,
        "model": settings.agent.model,
        "timeout_seconds": settings.agent.timeout_seconds,
        "graceful_shutdown_seconds": settings.agent.graceful_shutdown_seconds,
        "retry_delay_ceiling_seconds": settings.provider.retry_delay_ceiling_seconds,
        "retry_buffer_seconds": settings.provider.retry_buffer_seconds,
        "default_retry_delay_seconds": settings.provider.default_retry_delay_seconds,
    }
