"""Provider adapters: uniform request in, normalized results out.

Each adapter pairs an ``invoke`` (build the provider-specific call and run it
on a connected handle) with a ``normalize`` (turn the provider-specific
response into :class:`SearchResult` objects).  New providers are added as new
entries in :data:`ADAPTERS`.
"""

from __future__ import annotations

import json
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import structlog
from pydantic import ValidationError

from hybrid_search.errors import ConfigurationError
from hybrid_search.models import ProviderKind, SearchResult
from hybrid_search.utils.url_utils import absolute_url_or_none

logger = structlog.get_logger(__name__)

_DEFAULT_RESULTS_KEYS: tuple[str, ...] = ("results", "organic", "organic_results", "items", "data")
_TITLE_KEYS = ("title", "Title", "name")
_URL_KEYS = ("url", "link", "URL", "href")
_CONTENT_KEYS = ("content", "snippet", "text", "Content", "description", "body")
_SCORE_KEYS = ("score", "relevance_score")

_DEFAULT_SCORE = 0.5
_OPAQUE_SCORE = 0.3
_PAGE_SCORE = 0.7
_FETCH_MAX_LENGTH = 5000

_HEADING_RE = re.compile(r"^\s*#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)


@dataclass(frozen=True)
class ProviderRequest:
    """The uniform request every adapter receives."""

    query: str
    max_results: int
    options: Mapping[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Tolerant normalization
# ---------------------------------------------------------------------------


def _first_str(item: Mapping[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _coerce_score(item: Mapping[str, Any]) -> float:
    for key in _SCORE_KEYS:
        value = item.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            score = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(score):
            return min(max(score, 0.0), 1.0)
    return _DEFAULT_SCORE


def opaque_result(text: str, provider_id: str) -> SearchResult:
    """Wrap an unstructured response as a single low-confidence result."""
    return SearchResult(
        title=f"Content from {provider_id}",
        content=text,
        provider=provider_id,
        score=_OPAQUE_SCORE,
    )


def normalize_item(item: Any, provider_id: str) -> SearchResult | None:  # noqa: ANN401
    """Map one provider item onto :class:`SearchResult`.

    Returns ``None`` for items that carry no title, url or content.
    """
    if isinstance(item, str):
        return opaque_result(item, provider_id) if item.strip() else None
    if not isinstance(item, Mapping):
        return None

    title = _first_str(item, _TITLE_KEYS)
    url = next(
        (u for u in (absolute_url_or_none(item.get(k)) for k in _URL_KEYS) if u is not None),
        None,
    )
    content = _first_str(item, _CONTENT_KEYS)
    if not (title or url or content):
        return None

    return SearchResult(
        title=title,
        url=url,
        content=content,
        provider=provider_id,
        score=_coerce_score(item),
    )


def normalize_payload(
    raw: Any,  # noqa: ANN401
    provider_id: str,
    results_keys: tuple[str, ...] = _DEFAULT_RESULTS_KEYS,
) -> list[SearchResult]:
    """Normalize a loosely-typed provider response.

    JSON text is decoded first.  A list is taken as the item list; a dict
    yields its first list under one of *results_keys*, or is itself a single
    item when it carries result fields.  Anything else becomes one opaque
    low-confidence result rather than an error.

    Args:
        raw:          Response body (text, bytes, or already-decoded JSON).
        provider_id:  Provider that produced the response.
        results_keys: Keys searched for the item list, in order.

    Returns:
        Normalized results in provider order.
    """
    if raw is None:
        return []
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "replace")

    payload = raw
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except ValueError:
            return [opaque_result(text, provider_id)]

    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, Mapping):
        items = next((payload[k] for k in results_keys if isinstance(payload.get(k), list)), None)
        if items is None:
            single = normalize_item(payload, provider_id)
            if single is not None:
                return [single]
            text = raw if isinstance(raw, str) else json.dumps(payload, default=str)
            return [opaque_result(text.strip(), provider_id)]
    else:
        return [opaque_result(str(raw).strip(), provider_id)]

    results: list[SearchResult] = []
    for rank, item in enumerate(items):
        try:
            result = normalize_item(item, provider_id)
        except (ValidationError, ValueError, TypeError) as exc:
            logger.warning("adapter.item_parse_error", provider=provider_id, rank=rank, error=str(exc))
            continue
        if result is not None:
            results.append(result)
    return results


# ---------------------------------------------------------------------------
# Adapter variants
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """Translation layer between the uniform request and one provider protocol."""

    name: str
    kind: ProviderKind
    results_keys: tuple[str, ...] = _DEFAULT_RESULTS_KEYS

    @abstractmethod
    async def invoke(self, handle: Any, request: ProviderRequest) -> Any:  # noqa: ANN401
        """Run the provider call on a connected *handle* and return the raw response."""

    def normalize(
        self, raw: Any, provider_id: str, request: ProviderRequest  # noqa: ANN401
    ) -> list[SearchResult]:
        return normalize_payload(raw, provider_id, self.results_keys)


class ToolAdapter(ProviderAdapter):
    """Calls one named tool on a subprocess tool server."""

    kind = ProviderKind.SUBPROCESS_TOOL

    def __init__(
        self,
        name: str,
        tool_name: str,
        build_arguments: Callable[[ProviderRequest], dict[str, Any]],
    ) -> None:
        self.name = name
        self.tool_name = tool_name
        self._build_arguments = build_arguments

    def build(self, request: ProviderRequest) -> tuple[str, dict[str, Any]]:
        tool = str(request.options.get("tool_name") or self.tool_name)
        return tool, self._build_arguments(request)

    async def invoke(self, handle: Any, request: ProviderRequest) -> Any:  # noqa: ANN401
        tool, arguments = self.build(request)
        return await handle.call_tool(tool, arguments)


class FetchToolAdapter(ToolAdapter):
    """Fetches a page by URL; plain page text becomes one result for that URL."""

    def __init__(self) -> None:
        super().__init__(
            "fetch",
            "fetch",
            lambda r: {
                "url": r.query,
                "max_length": int(r.options.get("max_length", _FETCH_MAX_LENGTH)),
            },
        )

    def normalize(
        self, raw: Any, provider_id: str, request: ProviderRequest  # noqa: ANN401
    ) -> list[SearchResult]:
        if isinstance(raw, str) and raw.strip():
            try:
                json.loads(raw)
            except ValueError:
                return [self._page_result(raw.strip(), provider_id, request)]
        return super().normalize(raw, provider_id, request)

    @staticmethod
    def _page_result(text: str, provider_id: str, request: ProviderRequest) -> SearchResult:
        url = absolute_url_or_none(request.query)
        heading = _HEADING_RE.search(text)
        title = heading.group(1) if heading else f"Content from {url or provider_id}"
        return SearchResult(title=title, url=url, content=text, provider=provider_id, score=_PAGE_SCORE)


class ApiAdapter(ProviderAdapter):
    """One HTTP call against a direct-API provider.

    Args:
        name:         Adapter identifier.
        method:       HTTP method.
        path:         Request path.
        build:        Builds the query parameters or JSON body.
        send_json:    Send the built payload as a JSON body instead of params.
        auth_header:  Header that carries the API key.
        auth_param:   Payload field that carries the API key.
        results_keys: Keys holding the result list in the response.
    """

    kind = ProviderKind.DIRECT_API

    def __init__(
        self,
        name: str,
        method: str,
        path: str,
        build: Callable[[ProviderRequest], dict[str, Any]],
        *,
        send_json: bool = False,
        auth_header: str | None = None,
        auth_param: str | None = None,
        results_keys: tuple[str, ...] = _DEFAULT_RESULTS_KEYS,
    ) -> None:
        self.name = name
        self.method = method
        self.path = path
        self._build = build
        self.send_json = send_json
        self.auth_header = auth_header
        self.auth_param = auth_param
        self.results_keys = results_keys

    async def invoke(self, handle: Any, request: ProviderRequest) -> Any:  # noqa: ANN401
        payload = self._build(request)
        headers: dict[str, str] = {}
        api_key = getattr(handle, "api_key", None)
        if api_key:
            if self.auth_header:
                headers[self.auth_header] = api_key
            elif self.auth_param:
                payload[self.auth_param] = api_key

        if self.send_json:
            return await handle.request(self.method, self.path, json=payload, headers=headers or None)
        return await handle.request(self.method, self.path, params=payload, headers=headers or None)


def _searxng_params(request: ProviderRequest) -> dict[str, Any]:
    params: dict[str, Any] = {"q": request.query, "format": "json"}
    for key in ("engines", "categories"):
        value = request.options.get(key)
        if value:
            params[key] = ",".join(value) if isinstance(value, (list, tuple)) else str(value)
    return params


ADAPTERS: dict[str, ProviderAdapter] = {
    adapter.name: adapter
    for adapter in (
        FetchToolAdapter(),
        ToolAdapter(
            "searxng",
            "web_search",
            lambda r: {"query": r.query, "count": r.max_results},
        ),
        ToolAdapter(
            "google_cse",
            "search",
            lambda r: {"query": r.query, "num": r.max_results},
        ),
        ToolAdapter(
            "rag_web_browser",
            "search",
            lambda r: {
                "query": r.query,
                "maxResults": r.max_results,
                "scrapingTool": r.options.get("scraping_tool", "raw-http"),
                "outputFormats": list(r.options.get("output_formats", ["markdown"])),
            },
        ),
        ToolAdapter(
            "generic_tool",
            "search",
            lambda r: {"query": r.query, "num": r.max_results},
        ),
        ApiAdapter(
            "serper",
            "POST",
            "/search",
            lambda r: {"q": r.query, "num": r.max_results},
            send_json=True,
            auth_header="X-API-KEY",
            results_keys=("organic",),
        ),
        ApiAdapter(
            "serpapi",
            "GET",
            "/search.json",
            lambda r: {"q": r.query, "num": r.max_results, "engine": "google"},
            auth_param="api_key",
            results_keys=("organic_results",),
        ),
        ApiAdapter(
            "exa",
            "POST",
            "/search",
            lambda r: {"query": r.query, "numResults": r.max_results},
            send_json=True,
            auth_header="x-api-key",
            results_keys=("results",),
        ),
        ApiAdapter(
            "searxng_api",
            "GET",
            "/search",
            _searxng_params,
            results_keys=("results",),
        ),
    )
}


def get_adapter(name: str) -> ProviderAdapter:
    """Return the adapter registered under *name*.

    Raises:
        ConfigurationError: If no adapter has that name.
    """
    try:
        return ADAPTERS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown adapter '{name}' (known: {', '.join(sorted(ADAPTERS))})"
        ) from None
