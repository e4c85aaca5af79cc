"""Search orchestrator — wires classification, routing, execution and processing."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from hybrid_search.errors import (
    AllProvidersFailed,
    ConfigurationError,
    ProviderInvocationError,
    SearchTimeoutError,
)
from hybrid_search.models import (
    HybridSearchResponse,
    ProviderConfig,
    ProviderErrorEntry,
    ProviderOutcome,
    ProviderSelection,
    ProvidersResponse,
    ProviderStatus,
    SearchResult,
    StatusResponse,
)
from hybrid_search.pipeline.context import SearchContext
from hybrid_search.pipeline.stage1_classify import QueryClassifier
from hybrid_search.pipeline.stage2_route import select_providers, selection_for_providers
from hybrid_search.pipeline.stage3_execute import SearchExecutor, error_entry
from hybrid_search.pipeline.stage4_process import ResultProcessor

logger = structlog.get_logger(__name__)

_REDACTED = "***"


class SearchState(str, Enum):
    """Lifecycle of one search request."""

    CLASSIFYING = "classifying"
    ROUTING = "routing"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    DONE = "done"
    FAILED = "failed"


@dataclass
class _ExecutionRun:
    """What the executing state collected."""

    attempted: list[str] = field(default_factory=list)
    outcomes: list[ProviderOutcome] = field(default_factory=list)
    results: list[SearchResult] = field(default_factory=list)
    deadline_exceeded: bool = False

    def add(self, outcome: ProviderOutcome) -> None:
        self.outcomes.append(outcome)
        self.results.extend(outcome.results)

    def abandon_unfinished(self) -> None:
        """Mark the deadline exceeded and record an error for every attempt still running."""
        self.deadline_exceeded = True
        finished = {o.provider_id for o in self.outcomes}
        for provider_id in self.attempted:
            if provider_id not in finished:
                exc = ProviderInvocationError(
                    provider_id, "abandoned: request deadline elapsed", timed_out=True
                )
                self.outcomes.append(
                    ProviderOutcome(provider_id=provider_id, error=error_entry(exc))
                )

    @property
    def errors(self) -> list[ProviderErrorEntry]:
        return [o.error for o in self.outcomes if o.error is not None]


def _redact(provider: ProviderConfig) -> dict[str, Any]:
    data = provider.model_dump(mode="json")
    transport = data.get("transport", {})
    for key in ("env", "headers"):
        transport[key] = {name: _REDACTED for name in transport.get(key, {})}
    return data


class SearchOrchestrator:
    """Public entry point of the hybrid search engine.

    Args:
        context: Shared process-lifetime :class:`SearchContext`.
    """

    def __init__(self, context: SearchContext) -> None:
        self.context = context
        self.classifier = QueryClassifier.from_config(context.config)
        self.processor = ResultProcessor.from_config(context.config.result_processing)
        self.executor = SearchExecutor(
            context.registry,
            context.connections,
            context.monitor,
            default_timeout=context.settings.provider_timeout_seconds,
        )

    async def close(self) -> None:
        await self.context.aclose()

    # ------------------------------------------------------------------
    # Hybrid search
    # ------------------------------------------------------------------

    async def hybrid_search(
        self,
        query: str,
        max_results: int = 10,
        strategy: str | None = None,
        providers: list[str] | None = None,
        deadline_seconds: float | None = None,
    ) -> HybridSearchResponse:
        """Classify, route, execute and aggregate one search request.

        Args:
            query:            User query or URL.
            max_results:      Maximum results returned after ranking.
            strategy:         Routing strategy name; defaults to
                ``settings.default_strategy``.
            providers:        Explicit provider ids; overrides strategy-based
                selection (the strategy still decides sequential vs. concurrent).
            deadline_seconds: Overall request deadline; defaults to
                ``settings.request_deadline_seconds`` (none if unset).

        Returns:
            :class:`HybridSearchResponse`; ``errors`` lists providers that
            failed when others succeeded.

        Raises:
            ValueError:         Blank query or non-positive ``max_results``.
            ConfigurationError: Unknown strategy.
            AllProvidersFailed: Every selected provider failed, or none was selected.
            SearchTimeoutError: Deadline elapsed with no results collected.
        """
        query = query.strip()
        if not query:
            raise ValueError("Query cannot be blank.")
        if max_results < 1:
            raise ValueError("max_results must be at least 1.")

        settings = self.context.settings
        strategy_name = strategy or settings.default_strategy
        if deadline_seconds is None:
            deadline_seconds = settings.request_deadline_seconds

        request_id = uuid.uuid4().hex[:12]
        t_start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            log = logger.bind(query=query[:80], strategy=strategy_name)
            log.info("search.start", max_results=max_results, explicit_providers=providers)

            self._transition(log, SearchState.CLASSIFYING)
            classification = self.classifier.classify(query)

            self._transition(
                log,
                SearchState.ROUTING,
                query_type=classification.query_type,
                patterns=classification.patterns,
                confidence=classification.confidence,
            )
            try:
                if providers:
                    selection = selection_for_providers(providers, strategy_name, self.context.config)
                else:
                    selection = select_providers(
                        classification, strategy_name, self.context.config, self.context.registry
                    )
            except ConfigurationError as exc:
                self._transition(log, SearchState.FAILED, reason=str(exc))
                raise

            self._transition(
                log,
                SearchState.EXECUTING,
                providers=selection.provider_ids,
                concurrent=selection.concurrent,
            )
            if selection.concurrent:
                run = await self._run_concurrent(selection, query, max_results, deadline_seconds)
            else:
                run = await self._run_sequential(selection, query, max_results, deadline_seconds)

            errors = run.errors
            if not run.results:
                failure: Exception | None = None
                if run.deadline_exceeded:
                    failure = SearchTimeoutError(deadline_seconds or 0.0, errors)
                elif not selection.provider_ids:
                    failure = AllProvidersFailed(
                        [], f"No enabled provider selected by strategy '{strategy_name}'"
                    )
                elif run.outcomes and len(errors) == len(run.outcomes):
                    failure = AllProvidersFailed(errors)
                if failure is not None:
                    self._transition(log, SearchState.FAILED, reason=str(failure))
                    raise failure

            self._transition(log, SearchState.AGGREGATING, collected=len(run.results))
            processed = self.processor.process(run.results, query)
            elapsed_ms = (time.perf_counter() - t_start) * 1000

            response = HybridSearchResponse(
                request_id=request_id,
                query=query,
                strategy=strategy_name,
                query_type=classification.query_type,
                providers_used=run.attempted,
                results=processed[:max_results],
                total_results=len(processed),
                errors=errors or None,
                partial=bool(errors) or run.deadline_exceeded,
                deadline_exceeded=run.deadline_exceeded,
                latency_ms=round(elapsed_ms, 1),
            )
            self._transition(
                log,
                SearchState.DONE,
                results=len(response.results),
                errors=len(errors),
                latency_ms=response.latency_ms,
            )
            return response

    @staticmethod
    def _transition(log: Any, state: SearchState, **details: Any) -> None:  # noqa: ANN401
        log.info(f"search.{state.value}", **details)

    async def _run_sequential(
        self,
        selection: ProviderSelection,
        query: str,
        max_results: int,
        deadline_seconds: float | None,
    ) -> _ExecutionRun:
        """Try providers in order, stopping at the first that returns results."""
        run = _ExecutionRun()
        loop = asyncio.get_running_loop()
        expires_at = loop.time() + deadline_seconds if deadline_seconds else None

        for provider_id in selection.provider_ids:
            remaining = None if expires_at is None else expires_at - loop.time()
            if remaining is not None and remaining <= 0:
                run.deadline_exceeded = True
                break

            run.attempted.append(provider_id)
            try:
                outcome = await asyncio.wait_for(
                    self.executor.attempt(provider_id, query, max_results),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                run.abandon_unfinished()
                break

            run.add(outcome)
            if outcome.results:
                break
        return run

    async def _run_concurrent(
        self,
        selection: ProviderSelection,
        query: str,
        max_results: int,
        deadline_seconds: float | None,
    ) -> _ExecutionRun:
        """Invoke providers concurrently (bounded) and merge in arrival order."""
        run = _ExecutionRun()
        provider_ids = selection.provider_ids
        semaphore = asyncio.Semaphore(selection.max_parallel or max(len(provider_ids), 1))

        async def _bounded(provider_id: str) -> ProviderOutcome:
            async with semaphore:
                run.attempted.append(provider_id)
                return await self.executor.attempt(provider_id, query, max_results)

        tasks = [asyncio.create_task(_bounded(pid)) for pid in provider_ids]
        try:
            for next_done in asyncio.as_completed(tasks, timeout=deadline_seconds or None):
                run.add(await next_done)
        except asyncio.TimeoutError:
            run.abandon_unfinished()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return run

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def status(self) -> StatusResponse:
        """Provider availability and performance since process start."""
        stats = self.context.monitor.stats()
        per_provider: dict[str, ProviderStatus] = {}
        for provider in self.context.registry:
            avg = stats.avg_latency_ms.get(provider.id)
            per_provider[provider.id] = ProviderStatus(
                enabled=provider.enabled,
                connected=self.context.connections.is_connected(provider.id),
                avg_latency_ms=round(avg, 1) if avg is not None else None,
                invocations=stats.provider_usage.get(provider.id, 0),
                priority=provider.priority,
                cost_score=provider.cost_score,
                quality_score=provider.quality_score,
            )

        return StatusResponse(
            server_status="operational",
            total_queries=stats.total_queries,
            success_rate=round(stats.success_rate, 4),
            per_provider=per_provider,
            recent_errors=stats.recent_errors,
            config_version=self.context.config.version,
        )

    def providers_info(self, provider_id: str | None = None) -> ProvidersResponse:
        """Provider configuration, with transport secrets redacted.

        Raises:
            ProviderNotFoundError: If *provider_id* is given but not declared.
        """
        registry = self.context.registry
        selected = [registry.get(provider_id)] if provider_id else list(registry)
        return ProvidersResponse(
            providers={p.id: _redact(p) for p in selected},
            routing_strategies=list(self.context.config.strategies),
            total_providers=len(registry),
            enabled_providers=len(registry.list_enabled()),
        )
