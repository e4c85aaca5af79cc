"""Exception hierarchy for the hybrid search engine.

Provider-level errors (:class:`ProviderUnavailable`,
:class:`ProviderInvocationError`) are caught at the executor boundary and
turned into error entries; only configuration errors and request-terminal
errors reach the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hybrid_search.models import ProviderErrorEntry


class HybridSearchError(Exception):
    """Base class for all hybrid search errors."""


class ConfigurationError(HybridSearchError):
    """Search configuration is missing, malformed, or references unknown names."""


class ProviderNotFoundError(HybridSearchError):
    """No provider with the requested id is declared."""

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Provider '{provider_id}' is not declared")
        self.provider_id = provider_id


class ProviderError(HybridSearchError):
    """A single provider could not serve a request."""

    kind = "provider_error"

    def __init__(self, provider_id: str, message: str) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.message = message


class ProviderUnavailable(ProviderError):
    """Connection or handshake with the provider failed."""

    kind = "unavailable"


class ProviderInvocationError(ProviderError):
    """The provider was reached but the call failed or timed out."""

    kind = "invocation_failed"

    def __init__(self, provider_id: str, message: str, *, timed_out: bool = False) -> None:
        super().__init__(provider_id, message)
        self.timed_out = timed_out


class AllProvidersFailed(HybridSearchError):
    """Every selected provider failed; the request cannot produce results."""

    def __init__(self, errors: list[ProviderErrorEntry], message: str | None = None) -> None:
        if message is None:
            attempted = ", ".join(e.provider for e in errors) or "none"
            message = f"All providers failed (attempted: {attempted})"
        super().__init__(message)
        self.errors = errors


class SearchTimeoutError(HybridSearchError):
    """The request deadline elapsed before any result was collected."""

    def __init__(self, deadline_seconds: float, errors: list[ProviderErrorEntry]) -> None:
        super().__init__(f"No results collected within {deadline_seconds:g}s deadline")
        self.deadline_seconds = deadline_seconds
        self.errors = errors
