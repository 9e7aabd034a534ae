"""Polling orchestrator for task-driven code-change pipelines."""

__version__ = "0.3.0"
