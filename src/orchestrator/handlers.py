"""Step handlers, one per step type."""

from typing import TYPE_CHECKING, Any, Optional

import structlog

from core.blueprint import Step, StepType
from core.errors import ConfigurationError, EngineError, RunCancelledError, ValidationError
from core.variables import MISSING, REFERENCE_PATTERN, interpolate, lookup, stringify
from platforms.resolver import resolve, resolve_method

from .context import ExecutionContext

if TYPE_CHECKING:
    from .interpreter import BlueprintInterpreter

logger = structlog.get_logger()


BODY_METHODS = ("POST", "PUT", "PATCH")


class StepHandler:
    """Base class for step handlers."""

    step_type: str = ""

    async def execute(
        self,
        step: Step,
        context: ExecutionContext,
        runtime: "BlueprintInterpreter",
    ) -> Any:
        raise NotImplementedError


def _payload(step: Step, name: str, label: str) -> Any:
    value = getattr(step, name)
    if value is None:
        raise ValidationError(f"{label} configuration missing", step_id=step.id)
    return value


class ActionHandler(StepHandler):
    """Call one integration method through rate limiting, retry and the breaker."""

    step_type = StepType.ACTION.value

    async def execute(self, step, context, runtime):
        action = _payload(step, "action", "Action")
        platform = action.integration.lower()
        parameters = interpolate(action.parameters, context.variables)

        credentials = context.credentials.get(platform)
        if credentials is None:
            raise ConfigurationError(
                f"No credentials found for platform: {platform}",
                integration=platform,
            )

        request = resolve(platform, runtime.catalog, credentials, runtime.config.http)
        method = resolve_method(platform, action.method, runtime.catalog)
        url = request.build_url(method.endpoint, parameters, method.required_params)
        http_method = method.http_method.upper()
        body = parameters if http_method in BODY_METHODS else None

        logger.info(
            "action_executing",
            run_id=context.run_id,
            step_id=step.id,
            integration=platform,
            method=action.method,
            http_method=http_method,
        )

        async def call():
            return await runtime.transport.request(
                http_method,
                url,
                headers=request.headers,
                json_body=body,
                timeout=request.timeout_seconds,
                integration=platform,
            )

        result = await runtime.call_integration(
            platform,
            f"{platform}.{action.method}",
            call,
            context,
        )

        if action.output_variable:
            context.variables[action.output_variable] = result
        context.variables[f"{step.id}_result"] = result
        return result


class ConditionHandler(StepHandler):
    """Evaluate an expression and run the matching branch."""

    step_type = StepType.CONDITION.value

    async def execute(self, step, context, runtime):
        condition = _payload(step, "condition", "Condition")

        if condition.cases:
            for index, case in enumerate(condition.cases):
                if self._evaluate(case.expression, context, runtime):
                    branch = case.label or f"case_{index}"
                    logger.info("condition_branch_selected", run_id=context.run_id, step_id=step.id, branch=branch)
                    await runtime.run_steps(case.steps, context)
                    return {"branch": branch}

            logger.info("condition_branch_selected", run_id=context.run_id, step_id=step.id, branch="default")
            await runtime.run_steps(condition.default_steps, context)
            return {"branch": "default"}

        result = self._evaluate(condition.expression, context, runtime)
        branch = "if_true" if result else "if_false"
        logger.info("condition_branch_selected", run_id=context.run_id, step_id=step.id, branch=branch)
        await runtime.run_steps(condition.if_true if result else condition.if_false, context)
        return {"result": result, "branch": branch}

    def _evaluate(self, expression: str, context: ExecutionContext, runtime) -> bool:
        resolved = interpolate(expression, context.variables)
        if not isinstance(resolved, str):
            resolved = stringify(resolved)
        return runtime.evaluator.evaluate(resolved, context.variables)


class LoopHandler(StepHandler):
    """Run the body once per element, exposing loop_item and loop_index."""

    step_type = StepType.LOOP.value

    async def execute(self, step, context, runtime):
        loop = _payload(step, "loop", "Loop")
        items = self._resolve_source(loop.array_source, context)

        if not isinstance(items, list):
            raise ValidationError(
                f"Loop array source is not an array (got {type(items).__name__})",
                step_id=step.id,
            )

        logger.info("loop_started", run_id=context.run_id, step_id=step.id, iterations=len(items))
        for index, item in enumerate(items):
            context.raise_if_cancelled()
            context.variables["loop_item"] = item
            context.variables["loop_index"] = index
            await runtime.run_steps(loop.steps, context)

        return {"iterations": len(items)}

    def _resolve_source(self, source: Any, context: ExecutionContext) -> Any:
        if not isinstance(source, str):
            return interpolate(source, context.variables)
        if REFERENCE_PATTERN.search(source):
            return interpolate(source, context.variables)
        bound = lookup(context.variables, source.strip())
        return source if bound is MISSING else bound


class DelayHandler(StepHandler):
    """Sleep this run only; wakes early on cancellation."""

    step_type = StepType.DELAY.value

    async def execute(self, step, context, runtime):
        delay = _payload(step, "delay", "Delay")
        logger.info("delay_started", run_id=context.run_id, step_id=step.id, seconds=delay.duration_seconds)
        await context.cancellation.sleep(delay.duration_seconds, run_id=context.run_id)
        return {"delayed_seconds": delay.duration_seconds}


class AgentCallHandler(StepHandler):
    """Ask a configured agent and store its text response."""

    step_type = StepType.AGENT_CALL.value

    async def execute(self, step, context, runtime):
        spec = _payload(step, "agent_call", "AI agent call")
        prompt = interpolate(spec.input_prompt, context.variables)
        if not isinstance(prompt, str):
            prompt = stringify(prompt)

        profile = None
        if runtime.agent_registry is not None:
            profile = await runtime.agent_registry.get_agent(spec.agent_id)
        if profile is None:
            raise ConfigurationError(f"AI agent not found: {spec.agent_id}")

        client = runtime.agent_client
        provider = client.provider_for(profile)

        async def call():
            return await client.complete(profile, prompt)

        if runtime.config.agents.use_resilience:
            response = await runtime.call_integration(
                provider,
                f"agent:{provider}.complete",
                call,
                context,
                breaker_name=f"agent:{provider}",
            )
        else:
            response = await call()

        if spec.output_variable:
            context.variables[spec.output_variable] = response
        context.variables[f"{step.id}_result"] = response

        await self._update_memory(profile, prompt, response, context, runtime)
        return {"agent_id": spec.agent_id, "response_chars": len(response)}

    async def _update_memory(self, profile, prompt, response, context, runtime) -> None:
        memory = runtime.agent_client.remember(profile, prompt, response)
        try:
            await runtime.agent_registry.update_agent_memory(profile.id, memory)
        except Exception as e:
            logger.warning(
                "agent_memory_update_failed",
                run_id=context.run_id,
                agent_id=profile.id,
                error=str(e),
            )


class RetryBlockHandler(StepHandler):
    """Re-run a block of steps until it succeeds or attempts run out."""

    step_type = StepType.RETRY.value

    async def execute(self, step, context, runtime):
        block = _payload(step, "retry", "Retry")
        last_error: Optional[EngineError] = None

        for attempt in range(1, block.max_attempts + 1):
            context.raise_if_cancelled()
            try:
                await runtime.run_steps(block.steps, context)
                return {"attempts": attempt}
            except RunCancelledError:
                raise
            except EngineError as e:
                last_error = e
            logger.warning(
                "retry_block_attempt_failed",
                run_id=context.run_id,
                step_id=step.id,
                attempt=attempt,
                max_attempts=block.max_attempts,
                error=str(last_error),
            )

        if block.on_retry_fail_steps:
            await runtime.run_steps(block.on_retry_fail_steps, context)
            return {"attempts": block.max_attempts, "recovered": True}

        raise last_error


class FallbackHandler(StepHandler):
    """Run the primary block, switching to the fallback block on failure."""

    step_type = StepType.FALLBACK.value

    async def execute(self, step, context, runtime):
        block = _payload(step, "fallback", "Fallback")
        try:
            await runtime.run_steps(block.primary_steps, context)
            return {"branch": "primary"}
        except RunCancelledError:
            raise
        except EngineError as e:
            logger.warning(
                "fallback_triggered",
                run_id=context.run_id,
                step_id=step.id,
                error=str(e),
            )

        await runtime.run_steps(block.fallback_steps, context)
        return {"branch": "fallback"}


def default_handlers() -> dict[str, StepHandler]:
    """Handlers for every built-in step type."""
    handlers = [
        ActionHandler(),
        ConditionHandler(),
        LoopHandler(),
        DelayHandler(),
        AgentCallHandler(),
        RetryBlockHandler(),
        FallbackHandler(),
    ]
    return {handler.step_type: handler for handler in handlers}
