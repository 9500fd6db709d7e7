"""Platform catalog and request resolution."""

from .catalog import (
    PlatformCatalog,
    PlatformConfig,
    PlatformAPIConfig,
    PlatformMethod,
    PlatformCredentialField,
)
from .resolver import RequestConfig, build_dynamic_url, resolve, resolve_method

__all__ = [
    "PlatformCatalog",
    "PlatformConfig",
    "PlatformAPIConfig",
    "PlatformMethod",
    "PlatformCredentialField",
    "RequestConfig",
    "build_dynamic_url",
    "resolve",
    "resolve_method",
]
