from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from kickfinder import cancellation
from kickfinder.cancellation import CancellationToken
from kickfinder.config import Settings
from kickfinder.errors import RateLimited, ScrapeError, ScrapeTimeout
from kickfinder.retry import RetryingConnector, connector_from_settings

logger = logging.getLogger(__name__)


class BrowserQLError(ScrapeError):
    pass


def browserql_endpoint(settings: Settings) -> str:
    if not settings.browserless_token:
        raise BrowserQLError("BROWSERLESS_API_TOKEN is required for BrowserQL")
    base = settings.browserless_url.rstrip("/")
    if base.startswith("wss:"):
        base = "https:" + base[len("wss:"):]
    elif base.startswith("ws:"):
        base = "http:" + base[len("ws:"):]
    params = urlencode({
        "token": settings.browserless_token,
        "proxy": "residential",
        "proxyCountry": settings.browserql_proxy_country,
        "proxyLocaleMatch": "true",
        "blockConsentModals": "true",
    })
    return f"{base}/stealth/bql?{params}"


def _short_error(response: httpx.Response) -> str:
    text = response.text
    if "<html>" in text or "<body>" in text:
        return f"{response.status_code} {response.reason_phrase}"
    if len(text) > 200:
        return text[:200] + "..."
    return text


class BrowserQLClient:
    """
    Stateless client for the Browserless BrowserQL endpoint.

    Each ``execute`` is one independent POST; no browser state survives
    between calls. Rate limits (429) are retried by the connector.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        connector: Optional[RetryingConnector] = None,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._owns_client = http_client is None
        self._connector = connector or connector_from_settings(settings, label="BrowserQL")

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.remote_call_timeout_ms / 1000.0)
        return self._client

    async def execute(
        self,
        mutation: str,
        variables: Optional[Dict[str, Any]] = None,
        *,
        token: Optional[CancellationToken] = None,
        label: str = "BrowserQL",
    ) -> Dict[str, Any]:
        endpoint = browserql_endpoint(self._settings)
        body = {"query": mutation, "variables": variables or {}}

        async def attempt() -> Dict[str, Any]:
            cancellation.check_or_fail(token, f"{label} request")
            try:
                response = await self._http().post(endpoint, json=body)
            except httpx.TimeoutException as exc:
                raise ScrapeTimeout(f"{label} remote call timed out") from exc
            if response.status_code == 429:
                raise RateLimited(f"{label} rate limit (429 Too Many Requests)")
            if response.status_code >= 400:
                raise BrowserQLError(
                    f"{label} request failed: {response.status_code} {response.reason_phrase} - {_short_error(response)}"
                )
            payload = response.json()
            if payload.get("errors"):
                raise BrowserQLError(f"{label} errors: {payload['errors']}")
            return payload.get("data") or {}

        data = await self._connector.call(attempt, token)
        cancellation.check_or_fail(token, f"{label} response")
        return data

    async def get_json(
        self,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        token: Optional[CancellationToken] = None,
        label: str = "api",
    ) -> Optional[Any]:
        """Plain GET for JSON endpoints a marketplace serves without a browser."""

        async def attempt() -> Optional[Any]:
            cancellation.check_or_fail(token, f"{label} api")
            try:
                response = await self._http().get(url, headers=headers)
            except httpx.TimeoutException as exc:
                raise ScrapeTimeout(f"{label} api timed out") from exc
            if response.status_code == 429:
                raise RateLimited(f"{label} api rate limit (429 Too Many Requests)")
            if response.status_code >= 400:
                logger.warning("%s api returned HTTP %s", label, response.status_code)
                return None
            return response.json()

        return await self._connector.call(attempt, token)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
