"""Core engine components."""

from .config import ConfigLoader, EngineConfig
from .state import StateManager, RunStatus, AgentProfile
from .blueprint import Blueprint, Step, StepType, OnError
from .errors import (
    EngineError,
    ConfigurationError,
    ValidationError,
    TransientIntegrationError,
    CircuitOpenError,
    RetryExhaustedError,
    ExpressionError,
    RateLimitError,
    StepExecutionError,
    RunCancelledError,
    RunTimeoutError,
)

__all__ = [
    "ConfigLoader",
    "EngineConfig",
    "StateManager",
    "RunStatus",
    "AgentProfile",
    "Blueprint",
    "Step",
    "StepType",
    "OnError",
    "EngineError",
    "ConfigurationError",
    "ValidationError",
    "TransientIntegrationError",
    "CircuitOpenError",
    "RetryExhaustedError",
    "ExpressionError",
    "RateLimitError",
    "StepExecutionError",
    "RunCancelledError",
    "RunTimeoutError",
]
