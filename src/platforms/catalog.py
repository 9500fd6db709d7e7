"""Declarative platform API catalog."""

from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from core.config import ConfigLoader
from core.errors import ConfigurationError


class PlatformMethod(BaseModel):
    """One callable API method."""
    endpoint: str
    http_method: str = Field(default="GET")
    required_params: list[str] = Field(default_factory=list)
    optional_params: list[str] = Field(default_factory=list)
    example_request: Optional[Any] = None


class PlatformAPIConfig(BaseModel):
    """Base URL, auth scheme and methods of one platform."""
    base_url: str
    auth_type: str = Field(default="bearer")
    auth_header_format: str = Field(default="")
    methods: dict[str, PlatformMethod] = Field(default_factory=dict)


class PlatformCredentialField(BaseModel):
    """A credential field the platform expects."""
    field: str
    placeholder: str = ""
    link: str = ""
    why_needed: str = ""


class PlatformConfig(BaseModel):
    """A catalog entry."""
    name: str
    api_config: PlatformAPIConfig
    credentials: list[PlatformCredentialField] = Field(default_factory=list)


class PlatformCatalog:
    """Platform entries keyed by lower-cased name."""

    def __init__(self, platforms: Iterable[PlatformConfig] = ()):
        self._platforms: dict[str, PlatformConfig] = {}
        for platform in platforms:
            self._platforms[platform.name.lower()] = platform

    @classmethod
    def from_entries(cls, entries: Iterable[dict[str, Any]]) -> "PlatformCatalog":
        """Validate raw entries into a catalog."""
        platforms = []
        for entry in entries:
            try:
                platforms.append(PlatformConfig.model_validate(entry))
            except PydanticValidationError as e:
                name = entry.get("name") if isinstance(entry, dict) else None
                raise ConfigurationError(f"Invalid platform config {name or entry!r}: {e}", integration=name)
        return cls(platforms)

    @classmethod
    def load(cls, path: str, loader: Optional[ConfigLoader] = None) -> "PlatformCatalog":
        """Load a catalog file (YAML or JSON)."""
        loader = loader or ConfigLoader()
        return cls.from_entries(loader.load_platform_entries(path))

    def find(self, name: str) -> Optional[PlatformConfig]:
        return self._platforms.get(name.lower())

    def get_method(self, platform: str, method: str) -> Optional[PlatformMethod]:
        entry = self.find(platform)
        if entry is None:
            return None
        return entry.api_config.methods.get(method)

    def merged_with(self, entries: Iterable[dict[str, Any]]) -> "PlatformCatalog":
        """New catalog with entries layered over this one."""
        overrides = PlatformCatalog.from_entries(entries)
        merged = PlatformCatalog(self._platforms.values())
        merged._platforms.update(overrides._platforms)
        return merged

    def names(self) -> list[str]:
        return sorted(self._platforms)

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._platforms

    def __len__(self) -> int:
        return len(self._platforms)
