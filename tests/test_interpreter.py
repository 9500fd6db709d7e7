"""Tests for blueprint interpretation."""

import asyncio
import json
import os
import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import httpx

from core.blueprint import Blueprint
from core.config import AgentConfig, EngineConfig, RetryConfig
from core.errors import ConfigurationError, RetryExhaustedError, ValidationError
from core.state import AgentProfile
from integrations.agents import OPENAI_CHAT_URL
from integrations.http import HttpTransport
from orchestrator import BlueprintInterpreter, ExecutionContext, IntegrationRegistry, StepHandler
from platforms import PlatformCatalog


CATALOG_PATH = os.path.join(os.path.dirname(__file__), '..', 'config', 'platforms.yaml')


class FakeStore:
    """In-memory credential store, agent registry and progress sink."""

    def __init__(self, credentials=None, agents=None, fail_credentials=False):
        self.credentials = credentials or {}
        self.agents = agents or {}
        self.fail_credentials = fail_credentials
        self.progress = []
        self.memory_updates = {}

    async def load_credentials(self, user_id):
        if self.fail_credentials:
            raise RuntimeError("database unavailable")
        return self.credentials

    async def get_agent(self, agent_id):
        return self.agents.get(agent_id)

    async def update_agent_memory(self, agent_id, memory):
        self.memory_updates[agent_id] = memory

    async def save_progress(self, run_id, details):
        self.progress.append(json.loads(json.dumps(details, default=str)))


class Recorder:
    """httpx mock handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses) or [httpx.Response(200, json={"ok": True})]
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


async def _no_sleep(seconds):
    return None


def make_interpreter(handler, store=None, config=None):
    config = config or EngineConfig(
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0, jitter=False),
    )
    registry = IntegrationRegistry(config, sleep=_no_sleep)
    transport = HttpTransport(config.http, transport=httpx.MockTransport(handler))
    return BlueprintInterpreter(
        registry=registry,
        transport=transport,
        catalog=PlatformCatalog.load(CATALOG_PATH),
        config=config,
        credential_store=store,
        agent_registry=store,
        progress_sink=store,
    )


async def run_blueprint(data, handler=None, store=None, config=None, trigger_data=None):
    blueprint = Blueprint.from_dict(data)
    interpreter = make_interpreter(handler or Recorder(), store=store, config=config)
    context = ExecutionContext.for_blueprint(
        blueprint,
        run_id="run-1",
        user_id="user-1",
        automation_id="auto-1",
        trigger_data=trigger_data,
    )
    result = await interpreter.execute(blueprint, context)
    await interpreter.transport.close()
    return result, context


def slack_step(step_id="notify", text="Hello {{name}}", on_error=None, output_variable=None):
    step = {
        "id": step_id,
        "type": "action",
        "action": {
            "integration": "slack",
            "method": "send_message",
            "parameters": {"channel": "#ops", "text": text},
        },
    }
    if on_error:
        step["on_error"] = on_error
    if output_variable:
        step["action"]["output_variable"] = output_variable
    return step


def broken_step(step_id="broken", on_error=None):
    """Action on an uncatalogued platform with no credentials."""
    step = {
        "id": step_id,
        "type": "action",
        "action": {"integration": "zendesk", "method": "create_ticket"},
    }
    if on_error:
        step["on_error"] = on_error
    return step


def noop_step(step_id):
    return {"id": step_id, "type": "condition", "condition": {"expression": "true"}}


SLACK_CREDENTIALS = {"slack": {"bot_token": "xoxb-1"}}


class TestActionSteps:
    """Test action dispatch through the resilience layer."""

    @pytest.mark.asyncio
    async def test_action_request_and_output(self):
        recorder = Recorder(httpx.Response(200, json={"ok": True, "ts": "1.0"}))
        store = FakeStore(credentials=SLACK_CREDENTIALS)

        result, context = await run_blueprint(
            {"variables": {"name": "Ada"}, "steps": [slack_step(output_variable="slack_response")]},
            handler=recorder,
            store=store,
        )

        assert result.success
        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://slack.com/api/chat.postMessage"
        assert request.headers["Authorization"] == "Bearer xoxb-1"
        assert json.loads(request.content) == {"channel": "#ops", "text": "Hello Ada"}
        assert result.result["slack_response"] == {"ok": True, "ts": "1.0"}
        assert result.result["notify_result"] == {"ok": True, "ts": "1.0"}

    @pytest.mark.asyncio
    async def test_trigger_data_available(self):
        recorder = Recorder()
        store = FakeStore(credentials=SLACK_CREDENTIALS)

        result, _ = await run_blueprint(
            {"steps": [slack_step(text="Ticket {{ticket.id}}")]},
            handler=recorder,
            store=store,
            trigger_data={"ticket": {"id": 42}},
        )

        assert result.success
        assert json.loads(recorder.requests[0].content)["text"] == "Ticket 42"
        assert result.result["trigger_data"] == {"ticket": {"id": 42}}

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        result, _ = await run_blueprint({"steps": [slack_step()]}, store=FakeStore())

        assert not result.success
        assert isinstance(result.error, ConfigurationError)
        assert "No credentials found for platform: slack" in result.error.message
        assert result.error.context["step_id"] == "notify"

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_retries(self):
        recorder = Recorder(httpx.Response(503, text="unavailable"))
        store = FakeStore(credentials=SLACK_CREDENTIALS)

        result, _ = await run_blueprint({"steps": [slack_step()]}, handler=recorder, store=store)

        assert not result.success
        assert isinstance(result.error, RetryExhaustedError)
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_credential_load_failure_is_not_fatal(self):
        """A failing credential store is logged and the run continues."""
        result, _ = await run_blueprint(
            {"steps": [noop_step("only")]},
            store=FakeStore(fail_credentials=True),
        )
        assert result.success


class TestErrorPolicy:
    """Test per-step on_error handling."""

    @pytest.mark.asyncio
    async def test_continue_only_blueprint_succeeds(self):
        """A blueprint where every failing step continues still succeeds."""
        result, context = await run_blueprint(
            {"steps": [broken_step("a", "continue"), broken_step("b", "continue")]},
            store=FakeStore(),
        )

        assert result.success
        failed = [entry for entry in context.logs if entry.status == "failed"]
        assert [entry.step for entry in failed] == ["a", "b"]
        assert all("continuing" in entry.message for entry in failed)

    @pytest.mark.asyncio
    async def test_stop_halts_run(self):
        result, context = await run_blueprint(
            {"steps": [broken_step("a"), noop_step("never")]},
            store=FakeStore(),
        )

        assert not result.success
        assert isinstance(result.error, ConfigurationError)
        assert "never" not in {entry.step for entry in context.logs}

    @pytest.mark.asyncio
    async def test_retry_redispatches_once(self):
        """on_error retry runs the step one more time after the first failure."""
        recorder = Recorder(
            httpx.Response(500),
            httpx.Response(500),
            httpx.Response(200, json={"ok": True}),
        )
        store = FakeStore(credentials=SLACK_CREDENTIALS)

        result, _ = await run_blueprint(
            {"variables": {"name": "x"}, "steps": [slack_step(on_error="retry")]},
            handler=recorder,
            store=store,
        )

        assert result.success
        assert len(recorder.requests) == 3

    @pytest.mark.asyncio
    async def test_retry_policy_fails_after_second_attempt(self):
        result, context = await run_blueprint(
            {"steps": [broken_step("a", "retry")]},
            store=FakeStore(),
        )

        assert not result.success
        running = [entry for entry in context.logs if entry.status == "running"]
        assert len(running) == 2
        assert "after retry" in context.logs[-1].message

    @pytest.mark.asyncio
    async def test_unknown_step_type(self):
        result, _ = await run_blueprint({"steps": [{"id": "x", "type": "teleport"}]}, store=FakeStore())

        assert not result.success
        assert isinstance(result.error, ValidationError)
        assert "Unknown step type" in result.error.message

    @pytest.mark.asyncio
    async def test_nested_steps_follow_policy(self):
        """Nested steps apply their own on_error policy."""
        result, _ = await run_blueprint(
            {
                "steps": [{
                    "id": "check",
                    "type": "condition",
                    "condition": {
                        "expression": "true",
                        "if_true": [broken_step("inner", "continue"), noop_step("after")],
                    },
                }]
            },
            store=FakeStore(),
        )
        assert result.success

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self):
        """Non-engine exceptions from handlers become step errors."""

        class Exploding(StepHandler):
            step_type = "explode"

            async def execute(self, step, context, runtime):
                raise KeyError("boom")

        blueprint = Blueprint.from_dict({"steps": [{"id": "x", "type": "explode"}]})
        interpreter = make_interpreter(Recorder())
        interpreter.register_handler("explode", Exploding())
        context = ExecutionContext.for_blueprint(blueprint, run_id="run-1")

        result = await interpreter.execute(blueprint, context)

        assert not result.success
        assert result.error.context["step_type"] == "explode"
        assert isinstance(result.error.__cause__, KeyError)


class TestControlFlow:
    """Test condition, loop, delay, retry and fallback steps."""

    @pytest.mark.asyncio
    async def test_loop_variables(self):
        """After looping over [1, 2, 3], loop_index is 2 and loop_item is 3."""
        result, context = await run_blueprint(
            {
                "variables": {"items": [1, 2, 3]},
                "steps": [{
                    "id": "each",
                    "type": "loop",
                    "loop": {"array_source": "items", "steps": [noop_step("body")]},
                }],
            },
            store=FakeStore(),
        )

        assert result.success
        assert result.result["loop_index"] == 2
        assert result.result["loop_item"] == 3
        assert len([e for e in context.logs if e.step == "body" and e.status == "completed"]) == 3

    @pytest.mark.asyncio
    async def test_loop_reference_source(self):
        result, context = await run_blueprint(
            {
                "variables": {"data": {"rows": ["a", "b"]}},
                "steps": [{
                    "id": "each",
                    "type": "loop",
                    "loop": {"array_source": "{{data.rows}}", "steps": []},
                }],
            },
            store=FakeStore(),
        )

        assert result.success
        assert result.result["loop_item"] == "b"
        assert context.logs[-1].output == {"iterations": 2}

    @pytest.mark.asyncio
    async def test_loop_source_not_a_list(self):
        result, _ = await run_blueprint(
            {
                "variables": {"items": "abc"},
                "steps": [{"id": "each", "type": "loop", "loop": {"array_source": "items"}}],
            },
            store=FakeStore(),
        )

        assert not result.success
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_condition_branches(self):
        recorder = Recorder()
        store = FakeStore(credentials=SLACK_CREDENTIALS)

        result, context = await run_blueprint(
            {
                "variables": {"priority": "high"},
                "steps": [{
                    "id": "check",
                    "type": "condition",
                    "condition": {
                        "expression": "priority == 'high'",
                        "if_true": [slack_step("urgent", text="urgent")],
                        "if_false": [slack_step("normal", text="normal")],
                    },
                }],
            },
            handler=recorder,
            store=store,
        )

        assert result.success
        assert len(recorder.requests) == 1
        assert json.loads(recorder.requests[0].content)["text"] == "urgent"
        completed = [e for e in context.logs if e.step == "check" and e.status == "completed"]
        assert completed[0].output == {"result": True, "branch": "if_true"}

    @pytest.mark.asyncio
    async def test_condition_interpolated_expression(self):
        result, context = await run_blueprint(
            {
                "variables": {"count": 7},
                "steps": [{"id": "check", "type": "condition", "condition": {"expression": "{{count}} > 5"}}],
            },
            store=FakeStore(),
        )

        assert result.success
        assert context.logs[-1].output["result"] is True

    @pytest.mark.asyncio
    async def test_condition_cases(self):
        result, context = await run_blueprint(
            {
                "variables": {"status": "pending"},
                "steps": [{
                    "id": "route",
                    "type": "condition",
                    "condition": {
                        "cases": [
                            {"label": "closed", "expression": "status == 'closed'", "steps": [broken_step()]},
                            {"label": "pending", "expression": "status == 'pending'", "steps": [noop_step("p")]},
                        ],
                        "default_steps": [broken_step("d")],
                    },
                }],
            },
            store=FakeStore(),
        )

        assert result.success
        assert context.logs[-1].output == {"branch": "pending"}

    @pytest.mark.asyncio
    async def test_retry_block_recovers(self):
        result, context = await run_blueprint(
            {
                "steps": [{
                    "id": "again",
                    "type": "retry",
                    "retry": {
                        "max_attempts": 2,
                        "steps": [broken_step("inner")],
                        "on_retry_fail_steps": [noop_step("recover")],
                    },
                }]
            },
            store=FakeStore(),
        )

        assert result.success
        assert len([e for e in context.logs if e.step == "inner" and e.status == "failed"]) == 2
        assert context.logs[-1].output == {"attempts": 2, "recovered": True}

    @pytest.mark.asyncio
    async def test_retry_block_reraises(self):
        result, _ = await run_blueprint(
            {"steps": [{"id": "again", "type": "retry", "retry": {"max_attempts": 3, "steps": [broken_step()]}}]},
            store=FakeStore(),
        )

        assert not result.success
        assert isinstance(result.error, ConfigurationError)

    @pytest.mark.asyncio
    async def test_fallback(self):
        recorder = Recorder(httpx.Response(200, json={"ok": True}))
        store = FakeStore(credentials=SLACK_CREDENTIALS)

        result, context = await run_blueprint(
            {
                "steps": [{
                    "id": "safe",
                    "type": "fallback",
                    "fallback": {
                        "primary_steps": [broken_step()],
                        "fallback_steps": [slack_step("backup", text="fallback", output_variable="backup_out")],
                    },
                }]
            },
            handler=recorder,
            store=store,
        )

        assert result.success
        assert result.result["backup_out"] == {"ok": True}
        assert context.logs[-1].output == {"branch": "fallback"}

    @pytest.mark.asyncio
    async def test_delay_cancellation(self):
        """Cancelling wakes a run sleeping in a delay step."""
        blueprint = Blueprint.from_dict({
            "steps": [
                {"id": "wait", "type": "delay", "delay": {"duration_seconds": 30}},
                noop_step("never"),
            ]
        })
        interpreter = make_interpreter(Recorder(), store=FakeStore())
        context = ExecutionContext.for_blueprint(blueprint, run_id="run-1")

        task = asyncio.create_task(interpreter.execute(blueprint, context))
        await asyncio.sleep(0.05)
        context.cancellation.cancel("operator request")
        result = await asyncio.wait_for(task, timeout=2)

        assert not result.success
        assert result.cancelled
        assert result.error.message == "operator request"
        assert "never" not in {entry.step for entry in context.logs}


class TestAgentCalls:
    """Test agent steps."""

    @pytest.fixture
    def store(self):
        profile = AgentProfile(
            id="agent-1",
            agent_name="Triage",
            agent_role="Support triage",
            agent_goal="Classify tickets",
            llm_provider="openai",
            api_key="sk-test",
        )
        return FakeStore(agents={"agent-1": profile})

    @staticmethod
    def openai_handler(requests):
        def handler(request):
            requests.append(request)
            assert str(request.url) == OPENAI_CHAT_URL
            return httpx.Response(200, json={"choices": [{"message": {"content": "billing"}}]})
        return handler

    def agent_blueprint(self, agent_id="agent-1"):
        return {
            "variables": {"subject": "Refund please"},
            "steps": [{
                "id": "classify",
                "type": "agent_call",
                "agent_call": {
                    "agent_id": agent_id,
                    "input_prompt": "Classify: {{subject}}",
                    "output_variable": "category",
                },
            }],
        }

    @pytest.mark.asyncio
    async def test_agent_call(self, store):
        requests = []
        result, _ = await run_blueprint(self.agent_blueprint(), handler=self.openai_handler(requests), store=store)

        assert result.success
        assert result.result["category"] == "billing"
        body = json.loads(requests[0].content)
        assert body["messages"][1] == {"role": "user", "content": "Classify: Refund please"}
        assert "Support triage" in body["messages"][0]["content"]
        assert store.memory_updates["agent-1"][-1]["output"] == "billing"

    @pytest.mark.asyncio
    async def test_unknown_agent(self, store):
        result, _ = await run_blueprint(self.agent_blueprint("ghost"), store=store)

        assert not result.success
        assert "AI agent not found" in result.error.message

    @pytest.mark.asyncio
    async def test_agent_resilience_opt_in(self, store):
        """With use_resilience, agent calls get their own breaker."""
        config = EngineConfig(agents=AgentConfig(use_resilience=True))
        requests = []
        blueprint = Blueprint.from_dict(self.agent_blueprint())
        interpreter = make_interpreter(self.openai_handler(requests), store=store, config=config)
        context = ExecutionContext.for_blueprint(blueprint, run_id="run-1", user_id="user-1")

        result = await interpreter.execute(blueprint, context)

        assert result.success
        snapshot = interpreter.registry.snapshot()
        assert "agent:openai" in snapshot["circuit_breakers"]
        assert "openai" in snapshot["rate_limits"]


class TestProgress:
    """Test progress snapshots."""

    @pytest.mark.asyncio
    async def test_progress_written_per_step(self):
        store = FakeStore()
        result, _ = await run_blueprint(
            {"steps": [noop_step("one"), noop_step("two")]},
            store=store,
        )

        assert result.success
        assert [p["current_step"] for p in store.progress] == [1, 2]
        last = store.progress[-1]
        assert last["total_steps"] == 2
        assert [s["status"] for s in last["steps"]] == ["running", "completed", "running", "completed"]
        assert "started_at" in last

    @pytest.mark.asyncio
    async def test_progress_written_on_failure(self):
        store = FakeStore()
        result, _ = await run_blueprint({"steps": [broken_step()]}, store=store)

        assert not result.success
        assert store.progress[-1]["steps"][-1]["status"] == "failed"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
