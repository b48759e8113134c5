"""SQLite persistence for the build factory."""

from build_factory.storage.repository import FactoryRepository

__all__ = ["FactoryRepository"]
