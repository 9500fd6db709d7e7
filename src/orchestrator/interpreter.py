"""Blueprint interpreter: walks steps and applies per-step error policy."""

from typing import Any, Awaitable, Callable, Optional
from dataclasses import dataclass

import structlog

from core.blueprint import Blueprint, OnError, Step
from core.config import EngineConfig
from core.errors import EngineError, RunCancelledError, StepExecutionError, ValidationError
from core.state import AgentRegistry, CredentialStore, ProgressSink
from expressions.evaluator import ExpressionEvaluator
from integrations.agents import AgentClient
from integrations.http import HttpTransport
from platforms.catalog import PlatformCatalog

from .context import STEP_COMPLETED, STEP_FAILED, STEP_RUNNING, ExecutionContext
from .handlers import StepHandler, default_handlers
from .registry import IntegrationRegistry

logger = structlog.get_logger()


@dataclass
class ExecutionResult:
    """Outcome of one blueprint execution."""
    success: bool
    result: Optional[dict[str, Any]] = None
    error: Optional[EngineError] = None
    duration_ms: float = 0
    run_id: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, RunCancelledError)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "duration_ms": self.duration_ms,
        }


class BlueprintInterpreter:
    """
    Executes a blueprint against one execution context.

    Steps run strictly in order. Each step, nested ones included, goes
    through the same error policy (``stop``, ``continue`` or ``retry``).
    Progress is written to the sink after every top-level step.
    """

    def __init__(
        self,
        registry: IntegrationRegistry,
        transport: HttpTransport,
        catalog: Optional[PlatformCatalog] = None,
        config: Optional[EngineConfig] = None,
        credential_store: Optional[CredentialStore] = None,
        agent_registry: Optional[AgentRegistry] = None,
        progress_sink: Optional[ProgressSink] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        agent_client: Optional[AgentClient] = None,
    ):
        self.registry = registry
        self.transport = transport
        self.catalog = catalog or PlatformCatalog()
        self.config = config or registry.config
        self.credential_store = credential_store
        self.agent_registry = agent_registry
        self.progress_sink = progress_sink
        self.evaluator = evaluator or ExpressionEvaluator()
        self.agent_client = agent_client or AgentClient(transport, self.config.agents)

        self._handlers: dict[str, StepHandler] = default_handlers()

    def register_handler(self, step_type: str, handler: StepHandler) -> None:
        """Register a handler for a step type."""
        self._handlers[step_type] = handler

    async def execute(self, blueprint: Blueprint, context: ExecutionContext) -> ExecutionResult:
        """Run every top-level step; never raises for step failures."""
        log = logger.bind(
            run_id=context.run_id,
            automation_id=context.automation_id,
            user_id=context.user_id,
        )
        log.info("blueprint_execution_started", total_steps=len(blueprint.steps))

        context.credentials = await self._load_credentials(context)
        context.total_steps = len(blueprint.steps)

        try:
            for index, step in enumerate(blueprint.steps):
                context.step_index = index
                log.info("step_started", step_id=step.id, step_type=step.type, index=index + 1)
                await self.run_step(step, context)
                await self.persist_progress(context)

        except RunCancelledError as e:
            log.warning("blueprint_execution_cancelled", step_index=context.step_index, reason=e.message)
            await self.persist_progress(context)
            return ExecutionResult(
                success=False,
                error=e,
                duration_ms=context.elapsed_ms(),
                run_id=context.run_id,
            )

        except EngineError as e:
            log.error(
                "blueprint_execution_failed",
                step_index=context.step_index,
                error=e.to_dict(),
            )
            await self.persist_progress(context)
            return ExecutionResult(
                success=False,
                error=e,
                duration_ms=context.elapsed_ms(),
                run_id=context.run_id,
            )

        log.info("blueprint_execution_completed", duration_ms=context.elapsed_ms())
        return ExecutionResult(
            success=True,
            result=context.variables,
            duration_ms=context.elapsed_ms(),
            run_id=context.run_id,
        )

    async def run_steps(self, steps: list[Step], context: ExecutionContext) -> None:
        """Run a nested step list under the same policy as top-level steps."""
        for step in steps:
            await self.run_step(step, context)

    async def run_step(self, step: Step, context: ExecutionContext) -> Any:
        """Run one step and apply its on_error policy."""
        context.raise_if_cancelled()

        try:
            return await self._dispatch(step, context)
        except RunCancelledError:
            raise
        except Exception as e:
            error = self._as_engine_error(e, step)

        if step.on_error is OnError.CONTINUE:
            context.log_step(step.id, STEP_FAILED, f"Step failed but continuing: {error.message}", error=error.message)
            return None

        if step.on_error is OnError.RETRY:
            logger.info("step_retrying", run_id=context.run_id, step_id=step.id, error=error.message)
            context.raise_if_cancelled()
            try:
                return await self._dispatch(step, context)
            except RunCancelledError:
                raise
            except Exception as retry_exc:
                retry_error = self._as_engine_error(retry_exc, step)
            context.log_step(
                step.id, STEP_FAILED, f"Step failed after retry: {retry_error.message}", error=retry_error.message
            )
            raise retry_error

        context.log_step(step.id, STEP_FAILED, f"Step failed: {error.message}", error=error.message)
        raise error

    async def _dispatch(self, step: Step, context: ExecutionContext) -> Any:
        context.log_step(step.id, STEP_RUNNING, f"Starting step: {step.name}")

        handler = self._handlers.get(step.type)
        if handler is None:
            raise ValidationError(f"Unknown step type: {step.type}", step_id=step.id)

        output = await handler.execute(step, context, self)
        context.log_step(step.id, STEP_COMPLETED, f"Completed step: {step.name}", output=output)
        return output

    def _as_engine_error(self, exc: Exception, step: Step) -> EngineError:
        if isinstance(exc, EngineError):
            if not exc.context.get("step_id"):
                exc.context["step_id"] = step.id
            return exc
        error = StepExecutionError(
            f"{type(exc).__name__}: {exc}",
            step_id=step.id,
            step_type=step.type,
        )
        error.__cause__ = exc
        return error

    async def call_integration(
        self,
        integration: str,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        context: ExecutionContext,
        breaker_name: Optional[str] = None,
    ) -> Any:
        """Admit through the rate limiter, then run call with retry and breaker."""
        await self.registry.rate_limiter.wait_for_rate_limit(integration)
        self.registry.abuse_detector.record(context.user_id or "anonymous", operation)
        breaker = self.registry.breaker_for(breaker_name or integration)
        return await self.registry.retry_handler.execute_with_retry(call, operation, breaker)

    async def _load_credentials(self, context: ExecutionContext) -> dict[str, dict[str, Any]]:
        if self.credential_store is None or context.user_id is None:
            return dict(context.credentials)
        try:
            credentials = await self.credential_store.load_credentials(context.user_id)
        except Exception as e:
            logger.error("credential_load_failed", run_id=context.run_id, user_id=context.user_id, error=str(e))
            return dict(context.credentials)

        logger.info("credentials_loaded", run_id=context.run_id, platforms=sorted(credentials))
        return {**context.credentials, **credentials}

    async def persist_progress(self, context: ExecutionContext) -> None:
        """Write the progress snapshot; sink failures are logged only."""
        if self.progress_sink is None:
            return
        try:
            await self.progress_sink.save_progress(context.run_id, context.progress_snapshot())
        except Exception as e:
            logger.warning("progress_persist_failed", run_id=context.run_id, error=str(e))
