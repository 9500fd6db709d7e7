"""
Blueprint Automation Engine

Executes declarative workflow blueprints against third-party APIs:
- Step interpretation with per-step error policy
- Safe condition expressions over a run's variables
- Per-integration rate limiting, retry and circuit breaking
- LLM agent steps backed by OpenAI or Anthropic
"""

__version__ = "0.1.0"
