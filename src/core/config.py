"""Configuration loading and validation."""

import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from .errors import ConfigurationError


class RetryConfig(BaseModel):
    """Retry policy for outbound integration calls."""
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=10.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter: bool = Field(default=True)


class CircuitBreakerConfig(BaseModel):
    """Per-integration circuit breaker configuration."""
    failure_threshold: int = Field(default=5, ge=1, le=100)
    reset_timeout_seconds: float = Field(default=30.0, ge=0)


class BucketLimit(BaseModel):
    """Token bucket size: `capacity` calls per `window_seconds`."""
    capacity: int = Field(ge=1)
    window_seconds: float = Field(gt=0)


def _default_platform_limits() -> dict[str, BucketLimit]:
    return {
        "slack": BucketLimit(capacity=50, window_seconds=60),
        "gmail": BucketLimit(capacity=250, window_seconds=60),
        "google": BucketLimit(capacity=250, window_seconds=60),
        "trello": BucketLimit(capacity=100, window_seconds=10),
        "asana": BucketLimit(capacity=150, window_seconds=60),
        "github": BucketLimit(capacity=5000, window_seconds=3600),
        "notion": BucketLimit(capacity=180, window_seconds=60),
        "openai": BucketLimit(capacity=60, window_seconds=60),
        "anthropic": BucketLimit(capacity=50, window_seconds=60),
    }


class RateLimitConfig(BaseModel):
    """Per-integration admission control."""
    default_limit: BucketLimit = Field(
        default_factory=lambda: BucketLimit(capacity=60, window_seconds=60)
    )
    platform_limits: dict[str, BucketLimit] = Field(default_factory=_default_platform_limits)
    # None waits as long as needed
    max_wait_seconds: Optional[float] = Field(default=None, ge=0)


class AbuseConfig(BaseModel):
    """Sliding-window abuse detector thresholds (actions per window)."""
    window_seconds: float = Field(default=60.0, gt=0)
    low_threshold: int = Field(default=15, ge=1)
    medium_threshold: int = Field(default=25, ge=1)
    high_threshold: int = Field(default=50, ge=1)
    critical_threshold: int = Field(default=100, ge=1)


class HttpConfig(BaseModel):
    """Outbound HTTP settings."""
    timeout_seconds: float = Field(default=30.0, gt=0)
    user_agent: str = Field(default="Blueprint-Automation/1.0")
    max_response_chars: int = Field(default=100_000, ge=100)


class AgentConfig(BaseModel):
    """Agent provider defaults."""
    default_provider: str = Field(default="openai")
    default_model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=1024, ge=1)
    memory_limit: int = Field(default=50, ge=0)
    # Agent calls skip retry, breaker and rate limiting unless enabled
    use_resilience: bool = Field(default=False)


class RunConfig(BaseModel):
    """Run lifecycle settings."""
    max_run_seconds: Optional[float] = Field(default=300.0, gt=0)
    result_history: int = Field(default=256, ge=0)


class EngineConfig(BaseModel):
    """Main engine configuration."""
    name: str = Field(default="blueprint-automation")
    version: str = Field(default="0.1.0")

    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    abuse: AbuseConfig = Field(default_factory=AbuseConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    agents: AgentConfig = Field(default_factory=AgentConfig)
    runs: RunConfig = Field(default_factory=RunConfig)

    # Paths
    data_directory: str = Field(default="./data")
    catalog_path: Optional[str] = Field(default=None)

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


class ConfigLoader:
    """Loads engine configuration, blueprints and platform catalogs from YAML/JSON."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_engine_config(self, path: Optional[str] = None) -> EngineConfig:
        """Load main engine configuration."""
        if path is None:
            path = self.config_dir / "engine.yaml"
        else:
            path = Path(path)

        data = self.load_document(path)
        try:
            return EngineConfig(**data)
        except Exception as e:
            raise ConfigurationError(f"Invalid engine config {path}: {e}")

    def load_blueprint(self, path: str):
        """Load and validate a blueprint document."""
        from .blueprint import Blueprint

        data = self.load_document(Path(path))
        return Blueprint.from_dict(data)

    def load_platform_entries(self, path: str) -> list[dict[str, Any]]:
        """Load raw platform catalog entries.

        Accepts a list of entries, a mapping with a ``platforms`` list, or a
        single entry carrying a ``name``.
        """
        data = self.load_document(Path(path))
        if isinstance(data, list):
            return data
        return data.get("platforms", [data] if "name" in data else [])

    def load_document(self, path: Path) -> Any:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                return json.loads(content)
            else:
                raise ConfigurationError(f"Unsupported config format: {path.suffix}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {path}: {e}")

