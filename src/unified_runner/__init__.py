"""Unified build/test/deploy task orchestrator."""

__version__ = "0.1.0"
