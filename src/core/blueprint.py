"""Blueprint and step definitions."""

from typing import Any, Optional
from dataclasses import dataclass, field
from enum import Enum

import jsonschema

from .errors import ValidationError


class StepType(Enum):
    """Step type tags."""
    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    DELAY = "delay"
    AGENT_CALL = "agent_call"
    RETRY = "retry"
    FALLBACK = "fallback"


class OnError(Enum):
    """Per-step failure policy."""
    STOP = "stop"
    CONTINUE = "continue"
    RETRY = "retry"


# Older blueprints tag agent steps as ai_agent_call
STEP_TYPE_ALIASES = {"ai_agent_call": StepType.AGENT_CALL.value}


_STEP_LIST = {"type": "array", "items": {"$ref": "#/definitions/step"}}

BLUEPRINT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["steps"],
    "properties": {
        "version": {"type": ["string", "number"]},
        "description": {"type": ["string", "null"]},
        "trigger": {"type": "object"},
        "variables": {"type": ["object", "null"]},
        "platforms": {"type": "array", "items": {"type": "object"}},
        "steps": _STEP_LIST,
    },
    "definitions": {
        "step": {
            "type": "object",
            "required": ["id", "type"],
            "properties": {
                "id": {"type": "string", "minLength": 1},
                "name": {"type": "string"},
                "type": {"type": "string", "minLength": 1},
                "on_error": {"enum": [p.value for p in OnError]},
                "action": {
                    "type": "object",
                    "required": ["integration", "method"],
                    "properties": {
                        "integration": {"type": "string", "minLength": 1},
                        "method": {"type": "string", "minLength": 1},
                        "parameters": {"type": "object"},
                        "output_variable": {"type": "string"},
                    },
                },
                "condition": {
                    "type": "object",
                    "properties": {
                        "expression": {"type": "string"},
                        "if_true": _STEP_LIST,
                        "if_false": _STEP_LIST,
                        "cases": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["expression"],
                                "properties": {
                                    "label": {"type": "string"},
                                    "expression": {"type": "string"},
                                    "steps": _STEP_LIST,
                                },
                            },
                        },
                        "default_steps": _STEP_LIST,
                    },
                },
                "loop": {
                    "type": "object",
                    "required": ["array_source"],
                    "properties": {"steps": _STEP_LIST},
                },
                "delay": {
                    "type": "object",
                    "required": ["duration_seconds"],
                    "properties": {"duration_seconds": {"type": "number", "minimum": 0}},
                },
                "agent_call": {"$ref": "#/definitions/agent_call"},
                "ai_agent_call": {"$ref": "#/definitions/agent_call"},
                "retry": {
                    "type": "object",
                    "properties": {
                        "max_attempts": {"type": "integer", "minimum": 1},
                        "steps": _STEP_LIST,
                        "on_retry_fail_steps": _STEP_LIST,
                    },
                },
                "fallback": {
                    "type": "object",
                    "properties": {
                        "primary_steps": _STEP_LIST,
                        "fallback_steps": _STEP_LIST,
                    },
                },
            },
        },
        "agent_call": {
            "type": "object",
            "required": ["agent_id"],
            "properties": {
                "agent_id": {"type": "string", "minLength": 1},
                "input_prompt": {"type": "string"},
                "output_variable": {"type": "string"},
            },
        },
    },
}


@dataclass
class ActionSpec:
    """Call one method of one integration."""
    integration: str
    method: str
    parameters: dict[str, Any] = field(default_factory=dict)
    output_variable: Optional[str] = None
    platform_credential_id: Optional[str] = None


@dataclass
class ConditionCase:
    """One labelled branch of a multi-case condition."""
    expression: str
    steps: list["Step"] = field(default_factory=list)
    label: str = ""


@dataclass
class ConditionSpec:
    """Branch on an expression."""
    expression: str = ""
    if_true: list["Step"] = field(default_factory=list)
    if_false: list["Step"] = field(default_factory=list)
    cases: list[ConditionCase] = field(default_factory=list)
    default_steps: list["Step"] = field(default_factory=list)


@dataclass
class LoopSpec:
    """Run a body once per element of an array."""
    array_source: Any
    steps: list["Step"] = field(default_factory=list)


@dataclass
class DelaySpec:
    duration_seconds: float


@dataclass
class AgentCallSpec:
    """Ask a configured agent for a completion."""
    agent_id: str
    input_prompt: str = ""
    output_variable: Optional[str] = None


@dataclass
class RetryBlockSpec:
    """Re-run a block of steps until it succeeds."""
    max_attempts: int = 3
    steps: list["Step"] = field(default_factory=list)
    on_retry_fail_steps: list["Step"] = field(default_factory=list)


@dataclass
class FallbackSpec:
    """Run fallback steps when the primary block fails."""
    primary_steps: list["Step"] = field(default_factory=list)
    fallback_steps: list["Step"] = field(default_factory=list)


@dataclass
class Step:
    """A single blueprint step. Exactly one payload matches ``type``."""
    id: str
    type: str
    name: str = ""
    on_error: OnError = OnError.STOP

    action: Optional[ActionSpec] = None
    condition: Optional[ConditionSpec] = None
    loop: Optional[LoopSpec] = None
    delay: Optional[DelaySpec] = None
    agent_call: Optional[AgentCallSpec] = None
    retry: Optional[RetryBlockSpec] = None
    fallback: Optional[FallbackSpec] = None

    def __post_init__(self):
        self.type = STEP_TYPE_ALIASES.get(self.type, self.type)
        if not self.name:
            self.name = self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Step":
        """Build a step (and its nested steps) from a validated mapping."""
        step = cls(
            id=data["id"],
            type=data["type"],
            name=data.get("name", ""),
            on_error=OnError(data.get("on_error", OnError.STOP.value)),
        )

        if "action" in data:
            action = data["action"]
            step.action = ActionSpec(
                integration=action["integration"],
                method=action["method"],
                parameters=action.get("parameters", {}),
                output_variable=action.get("output_variable"),
                platform_credential_id=action.get("platform_credential_id"),
            )

        if "condition" in data:
            condition = data["condition"]
            step.condition = ConditionSpec(
                expression=condition.get("expression", ""),
                if_true=parse_steps(condition.get("if_true", [])),
                if_false=parse_steps(condition.get("if_false", [])),
                cases=[
                    ConditionCase(
                        expression=case["expression"],
                        steps=parse_steps(case.get("steps", [])),
                        label=case.get("label", ""),
                    )
                    for case in condition.get("cases", [])
                ],
                default_steps=parse_steps(condition.get("default_steps", [])),
            )

        if "loop" in data:
            loop = data["loop"]
            step.loop = LoopSpec(
                array_source=loop["array_source"],
                steps=parse_steps(loop.get("steps", [])),
            )

        if "delay" in data:
            step.delay = DelaySpec(duration_seconds=float(data["delay"]["duration_seconds"]))

        agent = data.get("agent_call") or data.get("ai_agent_call")
        if agent:
            step.agent_call = AgentCallSpec(
                agent_id=agent["agent_id"],
                input_prompt=agent.get("input_prompt", ""),
                output_variable=agent.get("output_variable"),
            )

        if "retry" in data:
            retry = data["retry"]
            step.retry = RetryBlockSpec(
                max_attempts=retry.get("max_attempts", 3),
                steps=parse_steps(retry.get("steps", [])),
                on_retry_fail_steps=parse_steps(retry.get("on_retry_fail_steps", [])),
            )

        if "fallback" in data:
            fallback = data["fallback"]
            step.fallback = FallbackSpec(
                primary_steps=parse_steps(fallback.get("primary_steps", [])),
                fallback_steps=parse_steps(fallback.get("fallback_steps", [])),
            )

        return step


def parse_steps(items: list[dict[str, Any]]) -> list[Step]:
    """Parse a step list, enforcing unique ids within the list."""
    steps = [Step.from_dict(item) for item in items]
    seen: set[str] = set()
    for step in steps:
        if step.id in seen:
            raise ValidationError(f"Duplicate step id in list: {step.id}", step_id=step.id)
        seen.add(step.id)
    return steps


@dataclass
class Blueprint:
    """An ordered list of steps plus the initial variable bag."""
    steps: list[Step] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    version: str = "1.0"
    trigger: dict[str, Any] = field(default_factory=dict)

    # Per-blueprint platform catalog entries, merged over the engine catalog
    platforms: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Blueprint":
        """Validate and parse a blueprint document."""
        try:
            jsonschema.validate(data, BLUEPRINT_SCHEMA)
        except jsonschema.ValidationError as e:
            location = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ValidationError(f"Invalid blueprint at {location}: {e.message}")

        return cls(
            steps=parse_steps(data["steps"]),
            variables=dict(data.get("variables") or {}),
            description=data.get("description") or "",
            version=str(data.get("version", "1.0")),
            trigger=data.get("trigger", {}),
            platforms=data.get("platforms", []),
        )
