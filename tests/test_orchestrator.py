"""End-to-end tests for the search orchestrator with fake providers."""

from __future__ import annotations

import pytest

from hybrid_search.errors import (
    AllProvidersFailed,
    ConfigurationError,
    ProviderNotFoundError,
    SearchTimeoutError,
)
from hybrid_search.pipeline.context import SearchContext
from hybrid_search.pipeline.orchestrator import SearchOrchestrator

from conftest import FakeOpener, item


# ---------------------------------------------------------------------------
# Sequential strategies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCascadeSearch:
    """Tests for sequential execution under smart_cascade."""

    async def test_url_query_uses_fetch_first(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        """The URL example: one fetched page, the fallback browser never runs."""
        opener.script("fetch_tool", raw="# Example Page\n\nWelcome to the example page.")

        response = await orchestrator.hybrid_search("https://example.com/page")

        assert response.query_type == "url"
        assert response.providers_used == ["fetch_tool"]
        assert [r.title for r in response.results] == ["Example Page"]
        assert response.results[0].provider == "fetch_tool"
        assert response.results[0].url == "https://example.com/page"
        assert opener.invocations == ["fetch_tool"]
        assert response.errors is None
        assert not response.partial

    async def test_stops_at_first_provider_with_results(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng")
        opener.script("google_cse", item("Python typing", "https://docs.python.org/3/library/typing.html"))
        opener.script("exa", item("Never reached", "https://exa.ai/"))

        response = await orchestrator.hybrid_search("python typing")

        assert response.providers_used == ["searxng", "google_cse"]
        assert [r.provider for r in response.results] == ["google_cse"]
        assert "exa" not in opener.invocations
        assert response.errors is None

    async def test_partial_failure(self, orchestrator: SearchOrchestrator, opener: FakeOpener) -> None:
        opener.script("searxng", error=RuntimeError("upstream 503"))
        opener.script("google_cse", item("Python error handling", "https://docs.python.org/3/tutorial/errors.html"))

        response = await orchestrator.hybrid_search("python error handling")

        assert len(response.results) == 1
        assert response.partial
        assert response.errors is not None
        assert [e.provider for e in response.errors] == ["searxng"]
        assert "upstream 503" in response.errors[0].error

    async def test_all_providers_failed(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", error=RuntimeError("down"))
        opener.unreachable.add("google_cse")

        with pytest.raises(AllProvidersFailed) as excinfo:
            await orchestrator.hybrid_search("python api")

        errors = excinfo.value.errors
        assert [e.provider for e in errors] == ["searxng", "google_cse"]
        assert [e.kind for e in errors] == ["invocation_failed", "unavailable"]
        assert "searxng, google_cse" in str(excinfo.value)

    async def test_empty_results_are_not_failures(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        response = await orchestrator.hybrid_search("hiking trails")

        assert response.results == []
        assert response.total_results == 0
        assert response.providers_used == ["searxng", "google_cse", "exa"]
        assert response.errors is None

    async def test_no_step_matches(self, orchestrator: SearchOrchestrator, opener: FakeOpener) -> None:
        with pytest.raises(AllProvidersFailed) as excinfo:
            await orchestrator.hybrid_search("hiking trails", strategy="news_only")
        assert excinfo.value.errors == []
        assert opener.invocations == []

    async def test_cost_optimized_order(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("google_cse", item("Cheap enough", "https://example.org/"))
        response = await orchestrator.hybrid_search("hiking trails", strategy="cost_optimized")
        assert response.providers_used == ["fetch_tool", "searxng", "google_cse"]

    async def test_no_provider_retried(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", error=RuntimeError("flaky"))
        opener.script("google_cse", error=RuntimeError("flaky"))
        opener.script("exa", error=RuntimeError("flaky"))
        with pytest.raises(AllProvidersFailed):
            await orchestrator.hybrid_search("hiking trails")
        assert opener.invocations == ["searxng", "google_cse", "exa"]


# ---------------------------------------------------------------------------
# Parallel-best
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestParallelSearch:
    """Tests for concurrent execution under parallel_best."""

    async def test_invokes_max_parallel_providers(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script(
            "searxng",
            item("Rust ownership", "https://doc.rust-lang.org/book/ch04-00.html", "rust ownership"),
            item("Rust borrowing", "https://doc.rust-lang.org/book/ch04-02.html", "borrowing"),
            delay=0.02,
        )
        opener.script(
            "google_cse",
            item("Ownership explained", "https://blog.example/ownership", "rust memory model"),
            item("Lifetimes", "https://blog.example/lifetimes", "rust lifetimes"),
            delay=0.02,
        )
        opener.script("exa", item("Unused", "https://exa.ai/"))

        response = await orchestrator.hybrid_search("rust", max_results=3, strategy="parallel_best")

        assert sorted(opener.invocations) == ["google_cse", "searxng"]
        assert opener.max_active == 2
        assert {r.provider for r in response.results} == {"searxng", "google_cse"}
        assert len(response.results) == 3
        assert response.total_results == 4

    async def test_one_failure_is_partial(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", item("Ok", "https://ok.example/"))
        opener.script("google_cse", error=RuntimeError("quota"))

        response = await orchestrator.hybrid_search("rust", strategy="parallel_best")

        assert response.partial
        assert [e.provider for e in response.errors or []] == ["google_cse"]
        assert [r.provider for r in response.results] == ["searxng"]

    async def test_deadline_returns_partial(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", item("Fast", "https://fast.example/"))
        opener.script("google_cse", item("Slow", "https://slow.example/"), delay=5.0)

        response = await orchestrator.hybrid_search(
            "rust", strategy="parallel_best", deadline_seconds=0.2
        )

        assert response.deadline_exceeded
        assert response.partial
        assert [r.title for r in response.results] == ["Fast"]
        assert response.errors is not None
        [entry] = response.errors
        assert entry.provider == "google_cse"
        assert entry.kind == "invocation_failed"
        assert entry.timed_out
        assert "deadline" in entry.error
        records = orchestrator.context.monitor.records()
        abandoned = [r for r in records if r.provider_id == "google_cse"]
        assert len(abandoned) == 1
        assert not abandoned[0].success

    async def test_deadline_without_results(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", delay=5.0)
        opener.script("google_cse", delay=5.0)
        with pytest.raises(SearchTimeoutError) as excinfo:
            await orchestrator.hybrid_search("rust", strategy="parallel_best", deadline_seconds=0.1)
        assert sorted(e.provider for e in excinfo.value.errors) == ["google_cse", "searxng"]
        assert all(e.timed_out for e in excinfo.value.errors)


# ---------------------------------------------------------------------------
# Request options
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestRequestOptions:
    """Tests for explicit providers, deadlines and validation."""

    async def test_explicit_providers(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("exa", item("From exa", "https://exa.ai/a"))
        response = await orchestrator.hybrid_search("https://example.com/page", providers=["exa"])
        assert response.providers_used == ["exa"]
        assert opener.invocations == ["exa"]

    async def test_explicit_disabled_provider_fails_visibly(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("exa", item("From exa", "https://exa.ai/a"))
        response = await orchestrator.hybrid_search("anything", providers=["legacy", "exa"])
        assert response.providers_used == ["legacy", "exa"]
        assert response.errors is not None
        assert response.errors[0].kind == "unavailable"
        assert response.partial

    async def test_sequential_deadline_without_results(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", delay=5.0)
        with pytest.raises(SearchTimeoutError) as excinfo:
            await orchestrator.hybrid_search("hiking trails", deadline_seconds=0.1)
        assert opener.invocations == ["searxng"]
        timed_out = [e.provider for e in excinfo.value.errors if e.timed_out]
        assert timed_out == ["searxng"]

    async def test_unknown_strategy(self, orchestrator: SearchOrchestrator) -> None:
        with pytest.raises(ConfigurationError):
            await orchestrator.hybrid_search("rust", strategy="fastest")

    async def test_unknown_strategy_with_explicit_providers(
        self, orchestrator: SearchOrchestrator
    ) -> None:
        with pytest.raises(ConfigurationError):
            await orchestrator.hybrid_search("rust", strategy="fastest", providers=["exa"])

    async def test_blank_query(self, orchestrator: SearchOrchestrator) -> None:
        with pytest.raises(ValueError):
            await orchestrator.hybrid_search("   ")

    async def test_truncation_and_ranking(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script(
            "searxng",
            item("Unrelated page", "https://a.example/", "nothing here"),
            item("Hiking guide", "https://b.example/", "hiking in the alps"),
            item("hiking boots", "https://c.example/", "gear"),
        )
        response = await orchestrator.hybrid_search("hiking", max_results=2)
        assert response.total_results == 3
        assert [r.title for r in response.results] == ["Hiking guide", "hiking boots"]
        assert all(r.provider for r in response.results)

    async def test_distinct_request_ids(self, orchestrator: SearchOrchestrator) -> None:
        first = await orchestrator.hybrid_search("hiking trails")
        second = await orchestrator.hybrid_search("hiking trails")
        assert first.request_id != second.request_id


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestDiagnostics:
    """Tests for status and provider listings."""

    async def test_status_after_searches(
        self, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", error=RuntimeError("down"))
        opener.script("google_cse", item("Result", "https://r.example/"))
        await orchestrator.hybrid_search("hiking trails")

        status = orchestrator.status()
        assert status.server_status == "operational"
        assert status.total_queries == 2
        assert status.success_rate == pytest.approx(0.5)
        assert status.config_version == "test-1"
        assert status.per_provider["google_cse"].connected
        assert status.per_provider["google_cse"].invocations == 1
        assert status.per_provider["google_cse"].avg_latency_ms is not None
        assert not status.per_provider["exa"].connected
        assert status.per_provider["exa"].avg_latency_ms is None
        assert not status.per_provider["legacy"].enabled
        assert [e.provider for e in status.recent_errors] == ["searxng"]

    async def test_status_before_any_search(self, orchestrator: SearchOrchestrator) -> None:
        status = orchestrator.status()
        assert status.total_queries == 0
        assert status.success_rate == 0.0
        assert len(status.per_provider) == 6

    async def test_providers_info_redacts_secrets(self, orchestrator: SearchOrchestrator) -> None:
        info = orchestrator.providers_info()
        assert info.total_providers == 6
        assert info.enabled_providers == 5
        assert "parallel_best" in info.routing_strategies
        assert info.providers["searxng"]["transport"]["env"] == {"SEARXNG_URL": "***"}

    async def test_providers_info_single(self, orchestrator: SearchOrchestrator) -> None:
        info = orchestrator.providers_info("exa")
        assert list(info.providers) == ["exa"]
        assert info.total_providers == 6

    async def test_providers_info_unknown(self, orchestrator: SearchOrchestrator) -> None:
        with pytest.raises(ProviderNotFoundError):
            orchestrator.providers_info("ghost")

    async def test_close_releases_handles(
        self, context: SearchContext, orchestrator: SearchOrchestrator, opener: FakeOpener
    ) -> None:
        opener.script("searxng", item("Result", "https://r.example/"))
        await orchestrator.hybrid_search("hiking trails")
        await orchestrator.close()
        assert opener.handles["searxng"].closed
        assert context.connections.connected_ids() == []
