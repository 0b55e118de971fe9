"""Event source registry — pluggable push-channel transports.

Learn: The listener is configured with a transport name, not a class:
    source = build_source(settings)       # settings.source == "postgres"
    conn = await source.connect()

Teams with their own transport register it once:
    register_source("nats", lambda s: NatsEventSource(s.nats_url))
"""

from typing import Callable

from notifyrelay.sources.base import EventConnection, EventSource
from notifyrelay.sources.postgres import PostgresEventSource
from notifyrelay.sources.redis_pubsub import RedisEventSource

__all__ = [
    "EventConnection",
    "EventSource",
    "PostgresEventSource",
    "RedisEventSource",
    "build_source",
    "list_sources",
    "register_source",
]

# ─── Registry ──────────────────────────────────────────────

_SOURCES: dict[str, Callable[..., EventSource]] = {
    "postgres": lambda s: PostgresEventSource(
        s.database_url, connect_timeout=s.connect_timeout_ms / 1000
    ),
    "redis": lambda s: RedisEventSource(
        s.redis_url, connect_timeout=s.connect_timeout_ms / 1000
    ),
}


def build_source(settings) -> EventSource:
    """Build the event source named by `settings.source`.

    Raises ValueError if the source is not registered.
    """
    factory = _SOURCES.get(settings.source)
    if not factory:
        available = ", ".join(sorted(_SOURCES.keys()))
        raise ValueError(f"Unknown source '{settings.source}'. Available: {available}")
    return factory(settings)


def list_sources() -> list[str]:
    """List registered source names."""
    return sorted(_SOURCES.keys())


def register_source(name: str, factory: Callable[..., EventSource]) -> None:
    """Register a custom transport factory taking a Settings instance."""
    _SOURCES[name] = factory
