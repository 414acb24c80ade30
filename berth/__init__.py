"""Berth - tenant isolation and sandbox lifecycle orchestrator."""

__version__ = "0.1.0"
