"""Event source base — pluggable push-channel transports.

Learn: The listener core never imports asyncpg or redis directly. It talks
to two small interfaces:

    source = PostgresEventSource(dsn)
    conn = await source.connect()          # may raise ConnectError
    await conn.subscribe("new_message")    # may raise ConnectError
    events = await conn.receive(1.0)       # may raise ReceiveError

Each transport adapter turns its driver's callbacks / pub-sub messages
into a FIFO of NotificationEvent that receive() drains. receive() must
return at or before its timeout, with an empty list when nothing arrived.
"""

from abc import ABC, abstractmethod

from notifyrelay.listener.models import NotificationEvent


class EventConnection(ABC):
    """One live connection to a push channel."""

    @abstractmethod
    async def subscribe(self, channel: str) -> None:
        """Start receiving notifications for `channel`.

        Idempotent per connection: subscribing twice to the same channel is
        a no-op. Raises ConnectError on failure.
        """

    @abstractmethod
    async def receive(self, timeout: float) -> list[NotificationEvent]:
        """Wait up to `timeout` seconds and return the events received, in order.

        Raises ReceiveError when the connection is broken.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call on an already-closed connection."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """True once the connection is closed or known to be lost."""


class EventSource(ABC):
    """Factory for EventConnection objects."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Transport identifier, e.g. 'postgres', 'redis'."""

    @abstractmethod
    async def connect(self) -> EventConnection:
        """Open a new connection. Raises ConnectError on failure."""

    @abstractmethod
    async def publish(self, channel: str, payload: str) -> None:
        """Send one notification on `channel` (used by the `notify` CLI command)."""
