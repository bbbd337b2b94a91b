"""Dependency-aware task ledger with atomic claims for autonomous workers."""

__version__ = "0.3.0"
