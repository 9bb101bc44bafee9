"""Provide the public `questboard` package exports."""

from __future__ import annotations

from .errors import ConflictError, OrchestrationError, QuestboardError
from .orchestrator import OrchestrationService, RunReport

__all__ = [
    "ConflictError",
    "OrchestrationError",
    "OrchestrationService",
    "QuestboardError",
    "RunReport",
]
