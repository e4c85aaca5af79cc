"""Shared pytest fixtures and configuration."""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from hybrid_search.config import Settings
from hybrid_search.errors import ProviderUnavailable
from hybrid_search.models import ProviderConfig, SearchConfig, SearchResult
from hybrid_search.pipeline.context import SearchContext
from hybrid_search.pipeline.orchestrator import SearchOrchestrator
from hybrid_search.services.registry import ProviderRegistry, parse_search_config


# ---------------------------------------------------------------------------
# Pytest configuration
# ---------------------------------------------------------------------------

pytest_plugins = ("pytest_asyncio",)


SEARCH_CONFIG_YAML = r"""
version: "test-1"

providers:
  fetch_tool:
    name: Fetch
    kind: subprocess-tool
    priority: 1
    cost_score: 0.0
    quality_score: 0.9
    adapter: fetch
    transport:
      command: fake-fetch
  rag_browser:
    name: RAG Browser
    kind: subprocess-tool
    priority: 2
    cost_score: 0.6
    quality_score: 0.85
    adapter: generic_tool
    transport:
      command: fake-rag
  searxng:
    name: SearXNG
    kind: subprocess-tool
    priority: 3
    cost_score: 0.1
    quality_score: 0.7
    adapter: generic_tool
    transport:
      command: fake-searxng
      env:
        SEARXNG_URL: http://localhost:8080
  google_cse:
    name: Google CSE
    kind: subprocess-tool
    priority: 4
    cost_score: 0.5
    quality_score: 0.9
    adapter: generic_tool
    transport:
      command: fake-google
  exa:
    name: Exa
    kind: subprocess-tool
    priority: 5
    cost_score: 0.7
    quality_score: 0.9
    adapter: generic_tool
    transport:
      command: fake-exa
  legacy:
    name: Legacy
    kind: subprocess-tool
    enabled: false
    priority: 6
    cost_score: 0.0
    quality_score: 0.1
    adapter: generic_tool
    transport:
      command: fake-legacy

strategies:
  smart_cascade:
    kind: cascade
    steps:
      - condition: url
        providers: [fetch_tool, rag_browser]
      - condition: technical
        providers: [searxng, google_cse]
      - condition: news
        providers: [exa, google_cse]
      - condition: default
        providers: [legacy, searxng, google_cse, exa]
  parallel_best:
    kind: parallel-best
    providers: [searxng, google_cse, exa]
    max_parallel: 2
  cost_optimized:
    kind: cost-optimized
  news_only:
    kind: cascade
    steps:
      - condition: news
        providers: [exa]

query_analysis:
  url:
    - '^https?://'
  technical:
    patterns:
      - '\b(python|api|error)\b'
    suggested_providers: [searxng]
  news:
    - '\b(news|latest)\b'
  privacy_sensitive:
    patterns:
      - '\b(password|medical)\b'
    confidence: 0.75

result_processing:
  similarity_threshold: 0.8
"""


# ---------------------------------------------------------------------------
# Fake provider handles
# ---------------------------------------------------------------------------


def item(title: str, url: str | None = None, content: str = "", **extra: Any) -> dict[str, Any]:
    """One provider-shaped result item."""
    data: dict[str, Any] = {"title": title, "content": content, **extra}
    if url is not None:
        data["url"] = url
    return data


@dataclass
class ProviderScript:
    """What a fake provider does when its tool is called."""

    items: list[dict[str, Any]] = field(default_factory=list)
    raw: str | None = None
    error: Exception | None = None
    delay: float = 0.0


class FakeHandle:
    """Stands in for a connected tool server."""

    def __init__(self, provider_id: str, opener: "FakeOpener") -> None:
        self.provider_id = provider_id
        self.opener = opener
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.closed = False
        self.alive = True

    @property
    def connected(self) -> bool:
        return self.alive and not self.closed

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        script = self.opener.scripts.get(self.provider_id, ProviderScript())
        self.calls.append((name, arguments))
        self.opener.invocations.append(self.provider_id)
        self.opener.active += 1
        self.opener.max_active = max(self.opener.max_active, self.opener.active)
        try:
            if script.delay:
                await asyncio.sleep(script.delay)
            if script.error is not None:
                raise script.error
            if script.raw is not None:
                return script.raw
            return json.dumps(script.items)
        finally:
            self.opener.active -= 1

    async def close(self) -> None:
        self.closed = True


class FakeOpener:
    """Injectable handle opener with scripted per-provider behaviour."""

    def __init__(self) -> None:
        self.scripts: dict[str, ProviderScript] = {}
        self.unreachable: set[str] = set()
        self.opened: Counter[str] = Counter()
        self.handles: dict[str, FakeHandle] = {}
        self.invocations: list[str] = []
        self.active = 0
        self.max_active = 0
        self.connect_delay = 0.0

    def script(self, provider_id: str, *items: dict[str, Any], **kwargs: Any) -> None:
        self.scripts[provider_id] = ProviderScript(items=list(items), **kwargs)

    async def __call__(self, provider: ProviderConfig) -> FakeHandle:
        self.opened[provider.id] += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if provider.id in self.unreachable:
            raise ProviderUnavailable(provider.id, "spawn failed")
        handle = FakeHandle(provider.id, self)
        self.handles[provider.id] = handle
        return handle


# ---------------------------------------------------------------------------
# Configuration fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def search_config_text() -> str:
    return SEARCH_CONFIG_YAML


@pytest.fixture
def search_config(search_config_text: str) -> SearchConfig:
    """Validated configuration with six providers and four strategies."""
    return parse_search_config(search_config_text, "test")


@pytest.fixture
def registry(search_config: SearchConfig) -> ProviderRegistry:
    return ProviderRegistry.from_config(search_config)


@pytest.fixture
def config_file(tmp_path: Path, search_config_text: str) -> Path:
    path = tmp_path / "search.yaml"
    path.write_text(search_config_text, encoding="utf-8")
    return path


@pytest.fixture
def test_settings(config_file: Path) -> Settings:
    return Settings(
        search_config_path=config_file,
        provider_timeout_seconds=1.0,
        handshake_timeout_seconds=1.0,
        environment="test",
    )


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def context(search_config: SearchConfig, test_settings: Settings, opener: FakeOpener) -> SearchContext:
    return SearchContext.create(search_config, test_settings, opener=opener)


@pytest.fixture
def orchestrator(context: SearchContext) -> SearchOrchestrator:
    return SearchOrchestrator(context)


@pytest.fixture
def sample_results() -> list[SearchResult]:
    """Results from two providers, including one near-duplicate title."""
    return [
        SearchResult(
            title="Python asyncio tutorial",
            url="https://docs.python.org/3/library/asyncio.html",
            content="asyncio is a library to write concurrent code.",
            provider="searxng",
            score=0.8,
        ),
        SearchResult(
            title="Real Python: async IO in Python",
            url="https://realpython.com/async-io-python/",
            content="A walkthrough of async IO in Python.",
            provider="google_cse",
            score=0.7,
        ),
        SearchResult(
            title="Python asyncio tutorial",
            url="https://example.com/mirror/asyncio",
            content="Mirror of the asyncio docs.",
            provider="google_cse",
            score=0.6,
        ),
    ]
