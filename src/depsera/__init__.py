"""Depsera manifest synchronization and drift reconciliation."""

__version__ = "0.4.0"
