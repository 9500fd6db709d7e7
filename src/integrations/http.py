"""Outbound HTTP transport."""

from typing import Any, Optional

import httpx
import structlog

from core.config import HttpConfig
from core.errors import TransientIntegrationError

logger = structlog.get_logger()


class HttpTransport:
    """
    Thin wrapper over a shared httpx.AsyncClient.

    Any network failure or non-2xx response becomes a retryable
    TransientIntegrationError. Bodies are parsed as JSON when possible,
    otherwise returned as (truncated) text.
    """

    def __init__(
        self,
        config: Optional[HttpConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or HttpConfig()
        self._client = client
        self._transport = transport
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.timeout_seconds,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json_body: Any = None,
        timeout: Optional[float] = None,
        integration: Optional[str] = None,
    ) -> Any:
        """Send a request and return the parsed body."""
        client = self._get_client()
        method = method.upper()

        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                json=json_body,
                timeout=timeout or self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("http_request_failed", integration=integration, method=method, url=url, error=str(e))
            raise TransientIntegrationError(
                f"Request to {integration or url} failed: {e}",
                integration=integration,
            ) from e

        if not response.is_success:
            logger.warning(
                "http_error_response",
                integration=integration,
                method=method,
                url=url,
                status_code=response.status_code,
            )
            raise TransientIntegrationError(
                f"API call failed: {response.status_code} {response.reason_phrase}",
                integration=integration,
                status_code=response.status_code,
                response_text=response.text,
            )

        logger.debug("http_request_completed", integration=integration, method=method, status_code=response.status_code)
        return self._parse_body(response)

    def _parse_body(self, response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return response.text[:self.config.max_response_chars]

    async def close(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
