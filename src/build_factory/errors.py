"""Configuration errors shared by the registry and spec factories."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid wiring or configuration detected before execution."""


class DuplicateRegistrationError(ConfigurationError):
    """A name-keyed registration collided with an existing entry."""
