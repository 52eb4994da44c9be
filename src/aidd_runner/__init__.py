"""Provide the public `aidd_runner` package exports."""

from __future__ import annotations

from .orchestrator import IterationController, run_aidd

__all__ = ["IterationController", "run_aidd"]
