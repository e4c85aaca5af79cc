"""Stage 3 — Single-provider invocation with telemetry."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

import structlog

from hybrid_search.errors import (
    ProviderError,
    ProviderInvocationError,
    ProviderNotFoundError,
    ProviderUnavailable,
)
from hybrid_search.models import InvocationRecord, ProviderErrorEntry, ProviderOutcome, SearchResult
from hybrid_search.services.adapters import ProviderRequest, get_adapter
from hybrid_search.services.connections import ConnectionManager
from hybrid_search.services.monitor import PerformanceMonitor
from hybrid_search.services.registry import ProviderRegistry

logger = structlog.get_logger(__name__)


def error_entry(exc: ProviderError) -> ProviderErrorEntry:
    """Convert a provider exception into the structured entry callers see."""
    return ProviderErrorEntry(
        provider=exc.provider_id,
        error=exc.message,
        kind=exc.kind,
        timed_out=getattr(exc, "timed_out", False),
    )


class SearchExecutor:
    """Invokes one provider through its adapter and records the attempt.

    Args:
        registry:        Provider registry.
        connections:     Connection manager supplying handles.
        monitor:         Receives one :class:`InvocationRecord` per call.
        default_timeout: Per-invocation timeout (seconds) for providers
            without their own ``timeout_seconds``.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        connections: ConnectionManager,
        monitor: PerformanceMonitor,
        default_timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self._connections = connections
        self._monitor = monitor
        self._default_timeout = default_timeout

    async def search(self, provider_id: str, query: str, max_results: int) -> list[SearchResult]:
        """Run *query* against *provider_id* and return normalized results.

        Args:
            provider_id: Declared provider id.
            query:       User query.
            max_results: Requested result count, forwarded to the provider.

        Returns:
            Normalized results (possibly empty).

        Raises:
            ProviderUnavailable:     Unknown/disabled provider or connection failure.
            ProviderInvocationError: The call failed or timed out.
        """
        started_at = datetime.now(timezone.utc)
        t_start = time.perf_counter()
        log = logger.bind(provider=provider_id)

        def _record(success: bool, error: str | None = None, count: int = 0) -> None:
            self._monitor.record(
                InvocationRecord(
                    provider_id=provider_id,
                    started_at=started_at,
                    duration_ms=(time.perf_counter() - t_start) * 1000,
                    success=success,
                    error=error,
                    result_count=count,
                )
            )

        try:
            try:
                provider = self._registry.get(provider_id)
            except ProviderNotFoundError as exc:
                raise ProviderUnavailable(provider_id, str(exc)) from exc
            if not provider.enabled:
                raise ProviderUnavailable(provider_id, "provider is disabled")

            adapter = get_adapter(provider.adapter)
            request = ProviderRequest(query=query, max_results=max_results, options=provider.options)
            timeout = provider.timeout_seconds or self._default_timeout

            async def _invoke() -> object:
                handle = await self._connections.get_handle(provider_id)
                return await adapter.invoke(handle, request)

            try:
                raw = await asyncio.wait_for(_invoke(), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ProviderInvocationError(
                    provider_id, f"timed out after {timeout:g}s", timed_out=True
                ) from exc
            except ProviderError:
                raise
            except Exception as exc:  # noqa: BLE001
                raise ProviderInvocationError(provider_id, f"{type(exc).__name__}: {exc}") from exc

            results = adapter.normalize(raw, provider_id, request)
        except ProviderError as exc:
            _record(False, exc.message)
            log.warning("executor.invoke_failed", kind=exc.kind, error=exc.message)
            raise
        except asyncio.CancelledError:
            _record(False, "abandoned: request deadline elapsed")
            log.info("executor.invoke_abandoned")
            raise

        _record(True, count=len(results))
        log.info("executor.invoke_ok", results=len(results))
        return results

    async def attempt(self, provider_id: str, query: str, max_results: int) -> ProviderOutcome:
        """Like :meth:`search`, but provider errors come back as data.

        Returns:
            :class:`ProviderOutcome` holding either the results or an error entry.
        """
        try:
            results = await self.search(provider_id, query, max_results)
        except ProviderError as exc:
            return ProviderOutcome(provider_id=provider_id, error=error_entry(exc))
        return ProviderOutcome(provider_id=provider_id, results=results)
