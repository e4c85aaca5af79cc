"""Async HTTP client for direct-API providers."""

from __future__ import annotations

import os
from types import TracebackType
from typing import Any

import httpx
import structlog

from hybrid_search.errors import ProviderUnavailable

logger = structlog.get_logger(__name__)

# Per-phase limits; the overall invocation timeout is enforced by the executor.
_TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=5.0, pool=5.0)


class DirectApiClient:
    """Long-lived HTTP handle for one direct-API provider.

    Created and connected by the connection manager, or used as an async
    context manager::

        async with DirectApiClient("serper", "https://google.serper.dev") as client:
            data = await client.request("POST", "/search", json={"q": query})

    Args:
        provider_id: Provider this handle belongs to (used in errors and logs).
        base_url:    Base URL of the API.
        headers:     Static headers sent with every request.
        api_key_env: Name of the environment variable holding the credential.
        transport:   Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        provider_id: str,
        base_url: str,
        *,
        headers: dict[str, str] | None = None,
        api_key_env: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider_id = provider_id
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._api_key_env = api_key_env
        self._transport = transport
        self._api_key: str | None = None
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "DirectApiClient":
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def connect(self) -> None:
        """Resolve the credential and open the connection pool.

        Raises:
            ProviderUnavailable: If ``api_key_env`` names an unset variable.
        """
        if self._api_key_env:
            self._api_key = os.environ.get(self._api_key_env)
            if not self._api_key:
                raise ProviderUnavailable(
                    self.provider_id,
                    f"environment variable {self._api_key_env} is not set",
                )
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=_TIMEOUT,
            transport=self._transport,
        )
        logger.debug("direct_api.connected", provider=self.provider_id, base_url=self._base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def connected(self) -> bool:
        return self._client is not None and not self._client.is_closed

    @property
    def api_key(self) -> str | None:
        return self._api_key

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("DirectApiClient not connected — call connect() first.")
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,  # noqa: ANN401
        headers: dict[str, str] | None = None,
    ) -> Any:  # noqa: ANN401
        """Send one request and return the decoded body.

        Args:
            method:  HTTP method.
            path:    Path relative to the base URL.
            params:  Query-string parameters.
            json:    JSON body.
            headers: Extra per-request headers (e.g. the API key).

        Returns:
            Decoded JSON when the response declares a JSON content type,
            otherwise the response text.

        Raises:
            httpx.HTTPError: On network or HTTP errors.
        """
        logger.debug("direct_api.request", provider=self.provider_id, method=method, path=path)
        resp = await self._http.request(method, path, params=params, json=json, headers=headers)
        resp.raise_for_status()

        if "json" in resp.headers.get("content-type", ""):
            return resp.json()
        return resp.text
