"""Anvil -- agent orchestration core for a human-gated coding assistant."""

__version__ = "0.1.0"
