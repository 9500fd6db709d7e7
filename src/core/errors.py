"""Engine error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Advisory, handled locally
    MEDIUM = "medium"     # Step-level failure
    HIGH = "high"         # Aborts the run unless policy says otherwise
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Network, 5xx - will likely resolve
    PERMANENT = "permanent"       # Missing config or credentials - won't resolve
    RESOURCE = "resource"         # Rate limit admission
    EXTERNAL = "external"         # Third-party service state (breaker, exhausted retries)
    VALIDATION = "validation"     # Blueprint or expression shape
    CANCELLED = "cancelled"       # Run aborted by operator or timeout


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        import hashlib
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("step_id", "")),
            str(self.context.get("integration", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigurationError(EngineError):
    """Missing credentials, platform config or method config."""

    def __init__(self, message: str, integration: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["integration"] = integration


class ValidationError(EngineError):
    """Blueprint shape error: unknown step type, loop source not a list, bad payload."""

    def __init__(self, message: str, step_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["step_id"] = step_id


class TransientIntegrationError(EngineError):
    """Non-2xx response or network failure from a third-party API."""

    def __init__(
        self,
        message: str,
        integration: Optional[str] = None,
        status_code: Optional[int] = None,
        response_text: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.TRANSIENT)
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.context["integration"] = integration
        self.context["status_code"] = status_code
        if response_text:
            self.context["response"] = response_text[:500]


class CircuitOpenError(EngineError):
    """Call rejected without a network attempt because the breaker is open."""

    def __init__(self, integration: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("retryable", False)
        super().__init__(f"Circuit breaker is OPEN for {integration}", **kwargs)
        self.retry_after = retry_after
        self.context["integration"] = integration
        self.context["retry_after"] = retry_after


class RetryExhaustedError(EngineError):
    """All retry attempts for an operation failed."""

    def __init__(
        self,
        operation: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("retryable", False)
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"Operation {operation} failed after {attempts} attempts{detail}",
            **kwargs
        )
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        self.context["operation"] = operation
        self.context["attempts"] = attempts


class ExpressionError(EngineError):
    """Condition expression rejected or malformed. Never leaves the evaluator."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["expression"] = expression


class RateLimitError(EngineError):
    """Rate limit admission could not be obtained in time."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        super().__init__(message, **kwargs)
        self.context["retry_after"] = retry_after


class StepExecutionError(EngineError):
    """Unexpected exception raised inside a step handler."""

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        step_type: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["step_id"] = step_id
        self.context["step_type"] = step_type


class RunCancelledError(EngineError):
    """Run stopped through its cancellation token."""

    def __init__(self, message: str = "Run cancelled", run_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["run_id"] = run_id


class RunTimeoutError(EngineError):
    """Run exceeded its maximum runtime."""

    def __init__(self, timeout_seconds: float, run_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        kwargs.setdefault("retryable", False)
        super().__init__(f"Run timed out after {timeout_seconds}s", **kwargs)
        self.context["run_id"] = run_id
        self.context["timeout_seconds"] = timeout_seconds
