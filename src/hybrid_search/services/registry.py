"""Provider registry and search configuration loading."""

from __future__ import annotations

import os
import re
from pathlib import Path
from string import Template
from typing import Any, Iterator, Mapping

import structlog
import yaml
from pydantic import ValidationError

from hybrid_search.errors import ConfigurationError, ProviderNotFoundError
from hybrid_search.models import ProviderConfig, SearchConfig, StrategyKind
from hybrid_search.services.adapters import get_adapter

logger = structlog.get_logger(__name__)


def _check_semantics(config: SearchConfig) -> None:
    """Cross-checks the pydantic schema cannot express."""
    for provider in config.providers.values():
        adapter = get_adapter(provider.adapter)
        if adapter.kind is not provider.kind:
            raise ConfigurationError(
                f"provider '{provider.id}' is {provider.kind.value} but adapter "
                f"'{provider.adapter}' expects {adapter.kind.value}"
            )

    for category, analysis in config.query_analysis.items():
        for pattern in analysis.patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ConfigurationError(
                    f"query_analysis.{category}: invalid regex {pattern!r}: {exc}"
                ) from exc

    for name, strategy in config.strategies.items():
        if strategy.kind is StrategyKind.CASCADE and not any(
            step.condition == "default" for step in strategy.steps
        ):
            logger.warning("registry.cascade_without_default", strategy=name)


def _substitute_env(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, str):
        return Template(value).safe_substitute(os.environ)
    if isinstance(value, list):
        return [_substitute_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _substitute_env(v) for k, v in value.items()}
    return value


def parse_search_config(raw_content: str, source: str = "<string>") -> SearchConfig:
    """Parse and validate a search configuration document.

    ``${VAR}`` references inside provider ``transport`` blocks are substituted
    from the environment after parsing; the rest of the document (notably the
    ``query_analysis`` regexes) is taken literally.

    Args:
        raw_content: YAML text.
        source:      Where the text came from, for error messages.

    Returns:
        The validated :class:`SearchConfig`.

    Raises:
        ConfigurationError: On any parse, schema, or semantic error.
    """
    try:
        data = yaml.safe_load(raw_content)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{source}: invalid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"{source}: expected a mapping at the top level")

    providers = data.get("providers")
    if isinstance(providers, dict):
        for provider in providers.values():
            if isinstance(provider, dict) and "transport" in provider:
                provider["transport"] = _substitute_env(provider["transport"])

    try:
        config = SearchConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"{source}: invalid configuration: {exc}") from exc

    _check_semantics(config)
    return config


def load_search_config(path: Path | str) -> SearchConfig:
    """Load the search configuration document from *path*.

    Raises:
        ConfigurationError: If the file is missing, unreadable, or invalid.
    """
    config_path = Path(path)
    try:
        raw_content = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read search config {config_path}: {exc}") from exc

    config = parse_search_config(raw_content, source=str(config_path))
    logger.info(
        "registry.config_loaded",
        path=str(config_path),
        providers=len(config.providers),
        strategies=list(config.strategies),
        version=config.version,
    )
    return config


class ProviderRegistry:
    """Read-only lookup over the declared providers.

    Args:
        providers: Mapping of provider id to :class:`ProviderConfig`, in
            declaration order.
    """

    def __init__(self, providers: Mapping[str, ProviderConfig]) -> None:
        self._providers = dict(providers)

    @classmethod
    def from_config(cls, config: SearchConfig) -> "ProviderRegistry":
        return cls(config.providers)

    def get(self, provider_id: str) -> ProviderConfig:
        """Return the provider declared as *provider_id*.

        Raises:
            ProviderNotFoundError: If it is not declared.
        """
        try:
            return self._providers[provider_id]
        except KeyError:
            raise ProviderNotFoundError(provider_id) from None

    def list_enabled(self) -> list[ProviderConfig]:
        """Enabled providers, lowest priority value first (declaration order on ties)."""
        enabled = [p for p in self._providers.values() if p.enabled]
        return sorted(enabled, key=lambda p: p.priority)

    def is_enabled(self, provider_id: str) -> bool:
        provider = self._providers.get(provider_id)
        return provider is not None and provider.enabled

    def ids(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)
