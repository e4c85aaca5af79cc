"""Lazily established, cached provider handles."""

from __future__ import annotations

import asyncio
import functools
from typing import Awaitable, Callable, Protocol

import structlog

from hybrid_search.errors import ProviderNotFoundError, ProviderUnavailable
from hybrid_search.models import ProviderConfig, ProviderKind
from hybrid_search.services.direct_api import DirectApiClient
from hybrid_search.services.registry import ProviderRegistry
from hybrid_search.services.stdio_tool import StdioToolClient

logger = structlog.get_logger(__name__)


class ProviderHandle(Protocol):
    """Anything the connection manager can cache, check for liveness and close."""

    @property
    def connected(self) -> bool: ...

    async def close(self) -> None: ...


HandleOpener = Callable[[ProviderConfig], Awaitable[ProviderHandle]]


async def open_handle(provider: ProviderConfig, *, handshake_timeout: float = 10.0) -> ProviderHandle:
    """Build and connect the transport described by *provider*.

    Args:
        provider:          Provider configuration.
        handshake_timeout: Seconds allowed for a tool server's handshake.

    Returns:
        A connected :class:`StdioToolClient` or :class:`DirectApiClient`.

    Raises:
        ProviderUnavailable: If the transport cannot be established.
    """
    transport = provider.transport
    client: StdioToolClient | DirectApiClient
    if provider.kind is ProviderKind.SUBPROCESS_TOOL:
        client = StdioToolClient(
            provider.id,
            transport.command or "",
            transport.args,
            env=transport.env,
            cwd=transport.cwd,
            api_key_env=transport.api_key_env,
            handshake_timeout=handshake_timeout,
        )
    else:
        client = DirectApiClient(
            provider.id,
            transport.base_url or "",
            headers=transport.headers,
            api_key_env=transport.api_key_env,
        )
    await client.connect()
    return client


def _consume_exception(task: asyncio.Task[ProviderHandle]) -> None:
    # Waiters may all have been cancelled; keep asyncio from warning about it.
    if not task.cancelled():
        task.exception()


class ConnectionManager:
    """Owns one long-lived handle per provider.

    Concurrent :meth:`get_handle` calls for an uncached provider share a
    single in-flight construction.  Failed constructions are not cached, so
    a later call retries.  A cached handle that has lost its connection
    is closed and replaced on the next request for it.

    Args:
        registry:          Provider registry.
        opener:            Coroutine building a connected handle (tests inject fakes).
        handshake_timeout: Passed to the default opener.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        opener: HandleOpener | None = None,
        *,
        handshake_timeout: float = 10.0,
    ) -> None:
        self._registry = registry
        self._opener: HandleOpener = opener or functools.partial(
            open_handle, handshake_timeout=handshake_timeout
        )
        self._handles: dict[str, ProviderHandle] = {}
        self._pending: dict[str, asyncio.Task[ProviderHandle]] = {}
        self._lock = asyncio.Lock()

    def is_connected(self, provider_id: str) -> bool:
        handle = self._handles.get(provider_id)
        return handle is not None and handle.connected

    def connected_ids(self) -> list[str]:
        return [pid for pid, handle in self._handles.items() if handle.connected]

    async def get_handle(self, provider_id: str) -> ProviderHandle:
        """Return the cached handle for *provider_id*, connecting on first use.

        Raises:
            ProviderUnavailable: If the provider is unknown, disabled, or the
                connection attempt fails.
        """
        handle = self._handles.get(provider_id)
        if handle is not None and handle.connected:
            return handle

        try:
            provider = self._registry.get(provider_id)
        except ProviderNotFoundError as exc:
            raise ProviderUnavailable(provider_id, str(exc)) from exc
        if not provider.enabled:
            raise ProviderUnavailable(provider_id, "provider is disabled")

        stale: ProviderHandle | None = None
        async with self._lock:
            handle = self._handles.get(provider_id)
            if handle is not None:
                if handle.connected:
                    return handle
                stale = self._handles.pop(provider_id)
            task = self._pending.get(provider_id)
            if task is None:
                task = asyncio.create_task(self._construct(provider), name=f"connect:{provider_id}")
                task.add_done_callback(_consume_exception)
                self._pending[provider_id] = task

        if stale is not None:
            logger.warning("connections.handle_lost", provider=provider_id)
            await self._close_handle(provider_id, stale)

        # A waiter timing out must not abort the construction others share.
        return await asyncio.shield(task)

    async def _construct(self, provider: ProviderConfig) -> ProviderHandle:
        log = logger.bind(provider=provider.id, kind=provider.kind.value)
        log.info("connections.connecting")
        try:
            handle = await self._opener(provider)
        except ProviderUnavailable as exc:
            log.warning("connections.connect_failed", error=str(exc))
            raise
        except Exception as exc:  # noqa: BLE001
            log.warning("connections.connect_failed", error=str(exc))
            raise ProviderUnavailable(provider.id, f"connection failed: {exc}") from exc
        finally:
            self._pending.pop(provider.id, None)

        self._handles[provider.id] = handle
        log.info("connections.connected")
        return handle

    async def close_all(self) -> None:
        """Release every cached handle and abandon in-flight constructions."""
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        handles, self._handles = self._handles, {}
        for provider_id, handle in handles.items():
            await self._close_handle(provider_id, handle)

    async def _close_handle(self, provider_id: str, handle: ProviderHandle) -> None:
        try:
            await handle.close()
            logger.info("connections.closed", provider=provider_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("connections.close_failed", provider=provider_id, error=str(exc))
