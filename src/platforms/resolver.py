"""
Request construction from platform configuration and credentials.

Catalog entries describe the auth scheme declaratively. Platforms missing
from the catalog fall back to name-based heuristics.
"""

import base64
import re
from typing import Any, Iterable, Optional
from dataclasses import dataclass, field
from urllib.parse import quote, urlencode

import structlog

from core.config import HttpConfig
from core.errors import ConfigurationError
from core.variables import stringify

from .catalog import PlatformCatalog, PlatformConfig, PlatformMethod

logger = structlog.get_logger()


# (platform family, method) -> (endpoint, http method)
FALLBACK_ENDPOINTS: dict[tuple[str, str], tuple[str, str]] = {
    ("slack", "send_message"): ("chat.postMessage", "POST"),
    ("gmail", "send_email"): ("users/me/messages/send", "POST"),
    ("trello", "create_card"): ("cards", "POST"),
    ("asana", "create_task"): ("tasks", "POST"),
    ("teams", "send_message"): ("", "POST"),
    ("help_scout", "add_label_to_ticket"): ("conversations/{ticket_id}/tags", "POST"),
    ("help_scout", "list_conversations"): ("conversations", "GET"),
    ("openai", "chat_completion"): ("chat/completions", "POST"),
    ("anthropic", "create_message"): ("messages", "POST"),
}

_HEADER_TEMPLATE = re.compile(r"^\s*([A-Za-z0-9-]+)\s*:\s*(.*)$")


@dataclass
class RequestConfig:
    """Everything needed to address one platform."""
    base_url: str
    headers: dict[str, str] = field(default_factory=dict)
    query_params: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0

    def build_url(
        self,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        required_params: Iterable[str] = (),
    ) -> str:
        """Build a full URL, adding auth query parameters."""
        url = build_dynamic_url(self.base_url, endpoint, params or {}, required_params)
        if self.query_params:
            url += ("&" if "?" in url else "?") + urlencode(self.query_params)
        return url


def build_dynamic_url(
    base_url: str,
    endpoint: str,
    params: dict[str, Any],
    required_params: Iterable[str] = (),
) -> str:
    """
    Join base and endpoint, fill ``{param}`` path placeholders, and append
    every parameter that is neither consumed by the path nor required as a
    query string.
    """
    if endpoint:
        url = f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"
    else:
        url = base_url

    consumed = set()
    for key, value in params.items():
        placeholder = "{" + key + "}"
        if placeholder in url:
            url = url.replace(placeholder, quote(stringify(value), safe="-_.!~*'()"))
            consumed.add(key)

    required = set(required_params)
    query = [
        (key, stringify(value))
        for key, value in params.items()
        if key not in consumed and key not in required
    ]
    if query:
        url += ("&" if "?" in url else "?") + urlencode(query)

    return url


def platform_family(name: str) -> Optional[str]:
    """Map a platform name onto a known integration family."""
    lower = name.lower()
    if "slack" in lower:
        return "slack"
    if "gmail" in lower or "google" in lower:
        return "gmail"
    if "trello" in lower:
        return "trello"
    if "asana" in lower:
        return "asana"
    if "teams" in lower:
        return "teams"
    if "helpscout" in lower or "help_scout" in lower or "help scout" in lower:
        return "help_scout"
    if "openai" in lower:
        return "openai"
    if "anthropic" in lower or "claude" in lower:
        return "anthropic"
    return None


def resolve(
    platform: str,
    catalog: PlatformCatalog,
    credentials: dict[str, Any],
    http: Optional[HttpConfig] = None,
) -> RequestConfig:
    """Build the request configuration for a platform."""
    http = http or HttpConfig()
    entry = catalog.find(platform)

    if entry is None:
        logger.warning("platform_config_missing", platform=platform, fallback=True)
        return _fallback_config(platform, credentials, http)

    api = entry.api_config
    config = RequestConfig(
        base_url=api.base_url,
        headers=_default_headers(api.base_url, http),
        timeout_seconds=http.timeout_seconds,
    )
    _apply_auth(entry, credentials, config)

    logger.debug("platform_config_resolved", platform=platform, auth_type=api.auth_type, source="catalog")
    return config


def resolve_method(platform: str, method: str, catalog: PlatformCatalog) -> PlatformMethod:
    """
    Find the method description for an action.

    A catalogued platform must declare the method. Other platforms use the
    fallback endpoint table.
    """
    entry = catalog.find(platform)
    if entry is not None:
        found = entry.api_config.methods.get(method)
        if found is None:
            raise ConfigurationError(
                f"Method {method} not configured for platform {platform}",
                integration=platform,
            )
        return found

    family = platform_family(platform)
    fallback = FALLBACK_ENDPOINTS.get((family, method)) if family else None
    if fallback is None:
        raise ConfigurationError(
            f"No configuration for {platform}.{method}",
            integration=platform,
        )

    endpoint, http_method = fallback
    logger.info("fallback_endpoint_used", platform=platform, method=method, endpoint=endpoint)
    return PlatformMethod(endpoint=endpoint, http_method=http_method)


def _default_headers(base_url: str, http: HttpConfig) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": http.user_agent,
    }
    if "slack.com" in base_url:
        headers["Content-Type"] = "application/json; charset=utf-8"
    elif "googleapis.com" in base_url or "api.trello.com" in base_url:
        headers["Accept"] = "application/json"
    return headers


def _credential_field(entry: PlatformConfig, credentials: dict[str, Any], needles: tuple[str, ...]) -> Optional[str]:
    """First declared (or supplied) credential field containing one of needles."""
    fields = [c.field for c in entry.credentials] or list(credentials)
    for name in fields:
        if any(needle in name for needle in needles) and credentials.get(name):
            return name
    return None


def _format_header(template: str, token: str, credentials: dict[str, Any]) -> str:
    value = template.replace("{token}", str(token))
    for key, secret in credentials.items():
        value = value.replace("{" + key + "}", str(secret))
    label = _HEADER_TEMPLATE.match(value)
    if label and label.group(1).lower() == "authorization":
        value = label.group(2)
    return value.strip()


def _apply_auth(entry: PlatformConfig, credentials: dict[str, Any], config: RequestConfig) -> None:
    api = entry.api_config
    auth_type = api.auth_type.lower()
    template = api.auth_header_format

    if auth_type in ("bearer", "bearer_token", "token"):
        name = _credential_field(entry, credentials, ("token", "api_key"))
        if name:
            config.headers["Authorization"] = _format_header(
                template or "Bearer {token}", credentials[name], credentials
            )

    elif auth_type == "api_key":
        name = _credential_field(entry, credentials, ("api_key", "key"))
        if name:
            token = credentials[name]
            custom = _HEADER_TEMPLATE.match(template)
            if "Authorization" in template:
                config.headers["Authorization"] = _format_header(template, token, credentials)
            elif custom:
                config.headers[custom.group(1)] = _format_header(custom.group(2), token, credentials)
            else:
                config.headers["X-API-Key"] = str(token)

    elif auth_type in ("oauth", "oauth2"):
        token = credentials.get("access_token") or credentials.get("token")
        if token:
            config.headers["Authorization"] = f"Bearer {token}"

    elif auth_type in ("basic", "basic_auth"):
        username = credentials.get("username")
        password = credentials.get("password")
        if username and password:
            encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
            config.headers["Authorization"] = f"Basic {encoded}"

    else:
        # Custom scheme: substitute every credential into the template
        value = template
        for key, secret in credentials.items():
            value = value.replace("{" + key + "}", str(secret))
        if "Authorization:" in value:
            config.headers["Authorization"] = value.split("Authorization:", 1)[1].strip()


def _bearer(token: Any) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _fallback_config(platform: str, credentials: dict[str, Any], http: HttpConfig) -> RequestConfig:
    config = RequestConfig(
        base_url="",
        headers={
            "Content-Type": "application/json",
            "User-Agent": http.user_agent,
        },
        timeout_seconds=http.timeout_seconds,
    )
    family = platform_family(platform)

    if family == "slack":
        config.base_url = "https://slack.com/api"
        config.headers["Content-Type"] = "application/json; charset=utf-8"
        config.headers.update(_bearer(
            credentials.get("bot_token") or credentials.get("access_token") or credentials.get("token")
        ))

    elif family == "gmail":
        config.base_url = "https://gmail.googleapis.com/gmail/v1"
        config.headers["Accept"] = "application/json"
        config.headers.update(_bearer(credentials.get("access_token")))

    elif family == "trello":
        # Trello authenticates with key and token query parameters
        config.base_url = "https://api.trello.com/1"
        config.headers["Accept"] = "application/json"
        key = credentials.get("api_key") or credentials.get("key")
        token = credentials.get("api_token") or credentials.get("token")
        if key:
            config.query_params["key"] = str(key)
        if token:
            config.query_params["token"] = str(token)

    elif family == "asana":
        config.base_url = "https://app.asana.com/api/1.0"
        config.headers.update(_bearer(
            credentials.get("personal_access_token") or credentials.get("access_token")
        ))

    elif family == "teams":
        webhook_url = credentials.get("webhook_url")
        if not webhook_url:
            raise ConfigurationError(
                f"Platform {platform} requires a webhook_url credential",
                integration=platform,
            )
        config.base_url = webhook_url

    elif family == "help_scout":
        config.base_url = "https://api.helpscout.net/v2"
        config.headers.update(_bearer(credentials.get("access_token")))

    elif family == "openai":
        config.base_url = "https://api.openai.com/v1"
        config.headers.update(_bearer(credentials.get("api_key")))

    elif family == "anthropic":
        config.base_url = "https://api.anthropic.com/v1"
        config.headers["anthropic-version"] = "2023-06-01"
        if credentials.get("api_key"):
            config.headers["x-api-key"] = str(credentials["api_key"])

    else:
        config.base_url = f"https://api.{platform.lower().replace(' ', '')}.com"
        config.headers.update(_bearer(credentials.get("api_key") or credentials.get("token")))

    logger.debug("platform_config_resolved", platform=platform, family=family or "generic", source="fallback")
    return config
