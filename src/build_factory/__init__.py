"""Orchestration core for an autonomous package build factory."""

__version__ = "0.1.0"
