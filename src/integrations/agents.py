"""LLM agent provider client."""

import json
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from core.config import AgentConfig
from core.errors import ConfigurationError
from core.state import AgentProfile

from .http import HttpTransport

logger = structlog.get_logger()


OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

PROVIDER_ALIASES = {"claude": "anthropic"}
DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
}

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class AgentClient:
    """Calls an agent's completion provider and maintains its memory."""

    def __init__(self, transport: HttpTransport, config: Optional[AgentConfig] = None):
        self.transport = transport
        self.config = config or AgentConfig()

    def provider_for(self, profile: AgentProfile) -> str:
        provider = (profile.llm_provider or self.config.default_provider).lower()
        return PROVIDER_ALIASES.get(provider, provider)

    def model_for(self, profile: AgentProfile, provider: str) -> str:
        if profile.model:
            return profile.model
        if provider == self.config.default_provider:
            return self.config.default_model
        return DEFAULT_MODELS.get(provider, self.config.default_model)

    def build_system_prompt(self, profile: AgentProfile) -> str:
        """System prompt from the agent's persona, or its rules alone."""
        if not (profile.agent_role or profile.agent_goal):
            return profile.agent_rules or DEFAULT_SYSTEM_PROMPT

        lines = [
            f"You are {profile.agent_name or 'an AI agent'}, an AI agent with the following configuration:",
            "",
            f"Role: {profile.agent_role}",
            f"Goal: {profile.agent_goal}",
            f"Rules: {profile.agent_rules}",
        ]
        if profile.agent_memory:
            lines.append(f"Memory Context: {json.dumps(profile.agent_memory, default=str)}")
        lines += [
            "",
            "You are part of an automation workflow. Provide precise, actionable responses.",
        ]
        return "\n".join(lines)

    async def complete(self, profile: AgentProfile, prompt: str) -> str:
        """Send prompt to the agent's provider and return the response text."""
        provider = self.provider_for(profile)
        if not profile.api_key:
            raise ConfigurationError(
                f"No API key configured for AI agent: {profile.agent_name or profile.id}",
                integration=provider,
            )

        model = self.model_for(profile, provider)
        system_prompt = self.build_system_prompt(profile)
        logger.info("agent_call_started", agent_id=profile.id, provider=provider, model=model)

        if provider == "openai":
            result = await self.transport.request(
                "POST",
                OPENAI_CHAT_URL,
                headers={
                    "Authorization": f"Bearer {profile.api_key}",
                    "Content-Type": "application/json",
                },
                json_body={
                    "model": model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": prompt},
                    ],
                    "temperature": self.config.temperature,
                    "max_tokens": self.config.max_tokens,
                },
                integration=provider,
            )
            return _openai_text(result)

        if provider == "anthropic":
            result = await self.transport.request(
                "POST",
                ANTHROPIC_MESSAGES_URL,
                headers={
                    "x-api-key": profile.api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                    "Content-Type": "application/json",
                },
                json_body={
                    "model": model,
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                    "system": system_prompt,
                    "messages": [{"role": "user", "content": prompt}],
                },
                integration=provider,
            )
            return _anthropic_text(result)

        raise ConfigurationError(f"Unsupported AI provider: {provider}", integration=provider)

    def remember(self, profile: AgentProfile, prompt: str, response: str) -> list[dict[str, Any]]:
        """Agent memory with this interaction appended, capped at memory_limit."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "input": prompt,
            "output": response,
        }
        memory = list(profile.agent_memory) + [entry]
        limit = self.config.memory_limit
        return memory[-limit:] if limit else []


def _openai_text(result: Any) -> str:
    if not isinstance(result, dict):
        return ""
    choices = result.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("message") or {}).get("content") or ""


def _anthropic_text(result: Any) -> str:
    if not isinstance(result, dict):
        return ""
    return "".join(
        block.get("text", "")
        for block in result.get("content") or []
        if block.get("type") == "text"
    )
