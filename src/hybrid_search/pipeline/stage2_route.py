"""Stage 2 — Provider selection by routing strategy."""

from __future__ import annotations

import structlog

from hybrid_search.errors import ConfigurationError
from hybrid_search.models import (
    CascadeStep,
    ProviderSelection,
    QueryClassification,
    SearchConfig,
    StrategyConfig,
    StrategyKind,
)
from hybrid_search.services.registry import ProviderRegistry

logger = structlog.get_logger(__name__)

DEFAULT_CONDITION = "default"


def get_strategy(strategy_name: str, config: SearchConfig) -> StrategyConfig:
    """Return the strategy declared as *strategy_name*.

    Raises:
        ConfigurationError: If no such strategy is declared.
    """
    strategy = config.strategies.get(strategy_name)
    if strategy is None:
        raise ConfigurationError(
            f"Unknown routing strategy '{strategy_name}' "
            f"(declared: {', '.join(config.strategies)})"
        )
    return strategy


def step_matches(step: CascadeStep, classification: QueryClassification) -> bool:
    """True if *step* applies to *classification*."""
    return (
        step.condition == DEFAULT_CONDITION
        or step.condition == classification.query_type
        or step.condition in classification.patterns
    )


def _cascade(
    strategy: StrategyConfig,
    classification: QueryClassification,
    registry: ProviderRegistry,
) -> list[str]:
    for step in strategy.steps:
        if step_matches(step, classification):
            return [p for p in step.providers if registry.is_enabled(p)]
    return []


def _parallel_best(strategy: StrategyConfig, registry: ProviderRegistry) -> list[str]:
    enabled = [p for p in strategy.providers if registry.is_enabled(p)]
    return enabled[: strategy.max_parallel]


def _cost_optimized(registry: ProviderRegistry) -> list[str]:
    ranked = sorted(registry.list_enabled(), key=lambda p: (p.cost_score, p.priority))
    return [p.id for p in ranked]


def select_providers(
    classification: QueryClassification,
    strategy_name: str,
    config: SearchConfig,
    registry: ProviderRegistry,
) -> ProviderSelection:
    """Choose which providers to try for a classified query.

    Args:
        classification: Output of stage 1.
        strategy_name:  Declared strategy name, e.g. ``"smart_cascade"``.
        config:         Loaded search configuration.
        registry:       Provider registry (for enablement and costs).

    Returns:
        :class:`ProviderSelection`; may be empty when no cascade step
        matches or every candidate is disabled.

    Raises:
        ConfigurationError: If the strategy is not declared.
    """
    strategy = get_strategy(strategy_name, config)

    if strategy.kind is StrategyKind.CASCADE:
        provider_ids = _cascade(strategy, classification, registry)
    elif strategy.kind is StrategyKind.PARALLEL_BEST:
        provider_ids = _parallel_best(strategy, registry)
    else:
        provider_ids = _cost_optimized(registry)

    selection = ProviderSelection(
        strategy=strategy_name,
        kind=strategy.kind,
        provider_ids=provider_ids,
        max_parallel=strategy.max_parallel if strategy.kind is StrategyKind.PARALLEL_BEST else None,
    )
    logger.debug(
        "router.routed",
        strategy=strategy_name,
        query_type=classification.query_type,
        providers=provider_ids,
    )
    return selection


def selection_for_providers(
    provider_ids: list[str],
    strategy_name: str,
    config: SearchConfig,
) -> ProviderSelection:
    """Build a selection from an explicit caller-supplied provider list.

    The list is used as given (order kept, repeats dropped, disabled ids
    left in so their attempts fail visibly); the named
    strategy only decides whether it runs sequentially or concurrently.

    Raises:
        ConfigurationError: If the strategy is not declared.
    """
    strategy = get_strategy(strategy_name, config)
    unique = list(dict.fromkeys(provider_ids))
    return ProviderSelection(
        strategy=strategy_name,
        kind=strategy.kind,
        provider_ids=unique,
        max_parallel=strategy.max_parallel if strategy.kind is StrategyKind.PARALLEL_BEST else None,
    )
