"""
Graph API HTTP Client

This module provides the thin authenticated client used by the platform
adapters. Every request is routed through the shared rate limiter, and
transport failures and error responses are translated into the typed
error taxonomy before they reach callers.
"""

import time
from typing import Any, Dict, Optional

import httpx
import structlog

from insightsync.config.settings import Settings, get_settings
from insightsync.integrations.rate_limiter import RateLimiter, RetryStrategy
from insightsync.models.analytics import Platform
from insightsync.utils.error_handling import classify_http_error, classify_transport_error
from insightsync.utils.logger import log_external_api_call, redact_token


class GraphAPIClient:
    """Authenticated Graph API client for one platform."""

    def __init__(
        self,
        platform: Platform,
        rate_limiter: RateLimiter,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.platform = platform
        self.rate_limiter = rate_limiter
        self.base_url = f"{settings.graph_api_base_url.rstrip('/')}/{settings.graph_api_version}"
        self.logger = structlog.get_logger(__name__)

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.request_timeout_seconds)

    async def __aenter__(self) -> "GraphAPIClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def endpoint_for(path: str) -> str:
        """Rate-limit key for a path: the edge name, or ``node`` for object reads."""
        segments = [segment for segment in path.strip("/").split("/") if segment]
        if not segments:
            return "node"
        if len(segments) == 1:
            return "me" if segments[0] == "me" else "node"
        return segments[-1]

    async def get(
        self,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]] = None,
        endpoint: Optional[str] = None,
        strategy: Optional[RetryStrategy] = None,
    ) -> Dict[str, Any]:
        """
        Issue a rate-limited GET against the versioned Graph API.

        Args:
            path: Object or edge path, e.g. ``/{media_id}/insights``
            access_token: Token sent as the ``access_token`` query parameter
            params: Additional query parameters
            endpoint: Rate-limit key override
            strategy: Retry strategy override

        Returns:
            Decoded JSON response body
        """
        endpoint = endpoint or self.endpoint_for(path)

        async def request() -> Dict[str, Any]:
            return await self._request("GET", path, access_token, params)

        return await self.rate_limiter.execute_with_retry(
            self.platform, endpoint, request, strategy
        )

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        query["access_token"] = access_token
        started = time.perf_counter()

        try:
            response = await self._client.request(method, self._url(path), params=query)
        except httpx.TransportError as exc:
            error = classify_transport_error(self.platform.value, exc)
            log_external_api_call(
                service=self.platform.value.lower(),
                operation=path,
                success=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                error_code=error.code,
            )
            raise error from exc

        duration_ms = (time.perf_counter() - started) * 1000
        payload = self._decode(response)

        if response.is_error or (isinstance(payload, dict) and "error" in payload):
            status_code = response.status_code if response.is_error else 400
            error = classify_http_error(
                self.platform.value, status_code, payload, response.headers
            )
            log_external_api_call(
                service=self.platform.value.lower(),
                operation=path,
                success=False,
                duration_ms=duration_ms,
                status_code=response.status_code,
                error_code=error.code,
                url=redact_token(str(response.request.url)),
            )
            raise error

        log_external_api_call(
            service=self.platform.value.lower(),
            operation=path,
            success=True,
            duration_ms=duration_ms,
            status_code=response.status_code,
        )
        return payload if isinstance(payload, dict) else {"data": payload}

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}
