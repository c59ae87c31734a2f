"""Sync orchestration and endpoint management."""
