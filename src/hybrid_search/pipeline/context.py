"""Process-lifetime context shared by every request."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from hybrid_search.config import Settings
from hybrid_search.models import SearchConfig
from hybrid_search.services.connections import ConnectionManager, HandleOpener
from hybrid_search.services.monitor import PerformanceMonitor
from hybrid_search.services.registry import ProviderRegistry, load_search_config

logger = structlog.get_logger(__name__)


@dataclass
class SearchContext:
    """Everything a request needs beyond its own arguments.

    The configuration and registry are immutable; the connection manager
    and the monitor are the only shared mutable state and guard their own
    access.  Created once at startup, closed once at shutdown.
    """

    config: SearchConfig
    settings: Settings
    registry: ProviderRegistry
    connections: ConnectionManager
    monitor: PerformanceMonitor

    @classmethod
    def create(
        cls,
        config: SearchConfig,
        settings: Settings,
        *,
        opener: HandleOpener | None = None,
    ) -> "SearchContext":
        registry = ProviderRegistry.from_config(config)
        return cls(
            config=config,
            settings=settings,
            registry=registry,
            connections=ConnectionManager(
                registry,
                opener,
                handshake_timeout=settings.handshake_timeout_seconds,
            ),
            monitor=PerformanceMonitor(),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SearchContext":
        """Load the search configuration named by *settings* and build the context.

        Raises:
            ConfigurationError: If the configuration cannot be loaded.
        """
        return cls.create(load_search_config(settings.search_config_path), settings)

    async def aclose(self) -> None:
        await self.connections.close_all()
        logger.info("context.closed")
