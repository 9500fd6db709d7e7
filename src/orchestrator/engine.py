"""
Automation engine - run lifecycle.

Creates run records, executes blueprints with a timeout, records the final
status and supports background runs with cancellation.
"""

import asyncio
import time
import uuid
from collections import OrderedDict
from typing import Any, Optional

import structlog

from core.blueprint import Blueprint
from core.config import EngineConfig
from core.errors import EngineError, RunTimeoutError, ValidationError
from core.state import RunStatus, StateManager
from integrations.http import HttpTransport
from platforms.catalog import PlatformCatalog

from .context import CancellationToken, ExecutionContext
from .interpreter import BlueprintInterpreter, ExecutionResult
from .registry import IntegrationRegistry

logger = structlog.get_logger()


class AutomationEngine:
    """
    Owns the integration registry and runs blueprints against it.

    Breakers and rate buckets in the registry are shared by every run this
    engine executes.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        state: Optional[StateManager] = None,
        catalog: Optional[PlatformCatalog] = None,
        transport: Optional[HttpTransport] = None,
        registry: Optional[IntegrationRegistry] = None,
    ):
        self.config = config or EngineConfig()
        self.state = state
        self.catalog = catalog or PlatformCatalog()
        self.transport = transport or HttpTransport(self.config.http)
        self.registry = registry or IntegrationRegistry(self.config)

        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._results: OrderedDict[str, ExecutionResult] = OrderedDict()
        self._start_time = time.time()
        self._completed = 0
        self._failed = 0

    def interpreter_for(self, blueprint: Blueprint) -> BlueprintInterpreter:
        """Interpreter wired to this engine, with blueprint platforms merged in."""
        catalog = self.catalog
        if blueprint.platforms:
            catalog = catalog.merged_with(blueprint.platforms)

        return BlueprintInterpreter(
            registry=self.registry,
            transport=self.transport,
            catalog=catalog,
            config=self.config,
            credential_store=self.state,
            agent_registry=self.state,
            progress_sink=self.state,
        )

    async def run(
        self,
        blueprint: Blueprint,
        user_id: Optional[str] = None,
        automation_id: Optional[str] = None,
        trigger_data: Optional[dict[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Execute a blueprint to completion."""
        run_id = await self._create_run(automation_id, user_id, trigger_data, run_id)
        return await self._execute_run(run_id, blueprint, user_id, automation_id, trigger_data)

    async def start_run(
        self,
        blueprint: Blueprint,
        user_id: Optional[str] = None,
        automation_id: Optional[str] = None,
        trigger_data: Optional[dict[str, Any]] = None,
        run_id: Optional[str] = None,
    ) -> str:
        """Start a run in the background and return its id."""
        run_id = await self._create_run(automation_id, user_id, trigger_data, run_id)
        task = asyncio.create_task(
            self._execute_run(run_id, blueprint, user_id, automation_id, trigger_data),
            name=f"run:{run_id}",
        )
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        return run_id

    async def wait_for_run(self, run_id: str) -> Optional[ExecutionResult]:
        """Wait for a background run to finish, or return its recent result."""
        task = self._tasks.get(run_id)
        if task is None:
            return self._results.get(run_id)
        return await task

    def cancel_run(self, run_id: str, reason: str = "Run cancelled") -> bool:
        """Signal a running run to stop. Returns False if it is not active."""
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info("run_cancel_requested", run_id=run_id, reason=reason)
        return True

    def active_runs(self) -> list[str]:
        return list(self._tokens)

    async def _create_run(
        self,
        automation_id: Optional[str],
        user_id: Optional[str],
        trigger_data: Optional[dict[str, Any]],
        run_id: Optional[str],
    ) -> str:
        if trigger_data is not None and not isinstance(trigger_data, dict):
            raise ValidationError(
                f"trigger_data must be an object, got {type(trigger_data).__name__}",
                context={"field": "trigger_data"},
            )
        run_id = run_id or str(uuid.uuid4())
        if self.state is not None:
            await self.state.create_run(
                automation_id=automation_id,
                user_id=user_id,
                trigger_data=trigger_data,
                run_id=run_id,
            )
        self._tokens[run_id] = CancellationToken()
        return run_id

    async def _execute_run(
        self,
        run_id: str,
        blueprint: Blueprint,
        user_id: Optional[str],
        automation_id: Optional[str],
        trigger_data: Optional[dict[str, Any]],
    ) -> ExecutionResult:
        token = self._tokens.setdefault(run_id, CancellationToken())
        timeout = self.config.runs.max_run_seconds
        log = logger.bind(run_id=run_id, automation_id=automation_id, user_id=user_id)

        try:
            try:
                context = ExecutionContext.for_blueprint(
                    blueprint,
                    run_id=run_id,
                    user_id=user_id,
                    automation_id=automation_id,
                    trigger_data=trigger_data,
                    cancellation=token,
                )
                interpreter = self.interpreter_for(blueprint)
            except EngineError as e:
                log.error("run_setup_failed", error=e.message, error_type=type(e).__name__)
                result = ExecutionResult(success=False, error=e, run_id=run_id)
            else:
                log.info("run_started", steps=len(blueprint.steps), timeout_seconds=timeout)
                await self._set_status(run_id, RunStatus.RUNNING)
                result = await self._execute_with_timeout(interpreter, blueprint, context, timeout, log)
        finally:
            self._tokens.pop(run_id, None)

        result.run_id = run_id
        if result.success:
            status = RunStatus.COMPLETED
            self._completed += 1
        elif result.cancelled:
            status = RunStatus.CANCELLED
        else:
            status = RunStatus.FAILED
            self._failed += 1

        await self._set_status(
            run_id,
            status,
            duration_ms=int(result.duration_ms),
            error=result.error.to_dict() if result.error else None,
            result=result.result,
        )
        self._remember(result)
        log.info("run_finished", status=status.value, duration_ms=int(result.duration_ms))
        return result

    async def _execute_with_timeout(
        self,
        interpreter: BlueprintInterpreter,
        blueprint: Blueprint,
        context: ExecutionContext,
        timeout: Optional[float],
        log,
    ) -> ExecutionResult:
        try:
            return await asyncio.wait_for(interpreter.execute(blueprint, context), timeout=timeout)
        except asyncio.TimeoutError:
            log.error("run_timed_out", timeout_seconds=timeout, step_index=context.step_index)
            await interpreter.persist_progress(context)
            return ExecutionResult(
                success=False,
                error=RunTimeoutError(timeout, run_id=context.run_id),
                duration_ms=context.elapsed_ms(),
                run_id=context.run_id,
            )

    def _remember(self, result: ExecutionResult) -> None:
        self._results[result.run_id] = result
        while len(self._results) > self.config.runs.result_history:
            self._results.popitem(last=False)

    async def _set_status(self, run_id: str, status: RunStatus, **kwargs) -> None:
        if self.state is None:
            return
        await self.state.update_run_status(run_id, status, **kwargs)

    def get_status(self) -> dict[str, Any]:
        """Engine status for the status endpoint."""
        return {
            "name": self.config.name,
            "version": self.config.version,
            "config_hash": self.config.config_hash(),
            "uptime_seconds": int(time.time() - self._start_time),
            "active_runs": self.active_runs(),
            "runs_completed": self._completed,
            "runs_failed": self._failed,
            "platforms": self.catalog.names(),
            "registry": self.registry.snapshot(),
        }

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Cancel active runs, wait for them, and close the transport."""
        for run_id in list(self._tokens):
            self.cancel_run(run_id, reason="Engine shutting down")

        tasks = list(self._tasks.values())
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("runs_abandoned_on_shutdown", count=len(pending))

        await self.transport.close()
        logger.info("engine_shutdown")
