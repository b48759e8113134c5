"""Built-in decision policies."""

from build_factory.specs.base import Spec, SpecContext, SpecDescription, SpecFactory
from build_factory.specs.hello import HelloSpec, HelloSpecFactory
from build_factory.specs.package_build import PackageBuildSpec, PackageBuildSpecFactory
from build_factory.specs.todo import TodoSpec, TodoSpecFactory

BUILTIN_SPEC_FACTORIES = (TodoSpecFactory, HelloSpecFactory, PackageBuildSpecFactory)

__all__ = [
    "BUILTIN_SPEC_FACTORIES",
    "HelloSpec",
    "HelloSpecFactory",
    "PackageBuildSpec",
    "PackageBuildSpecFactory",
    "Spec",
    "SpecContext",
    "SpecDescription",
    "SpecFactory",
    "TodoSpec",
    "TodoSpecFactory",
]
