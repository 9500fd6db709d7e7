"""Orchestrator module - blueprint interpretation and run lifecycle."""

from .context import CancellationToken, ExecutionContext
from .engine import AutomationEngine
from .handlers import StepHandler, default_handlers
from .interpreter import BlueprintInterpreter, ExecutionResult
from .registry import IntegrationRegistry

__all__ = [
    "CancellationToken",
    "ExecutionContext",
    "AutomationEngine",
    "StepHandler",
    "default_handlers",
    "BlueprintInterpreter",
    "ExecutionResult",
    "IntegrationRegistry",
]
