"""PostgreSQL LISTEN/NOTIFY transport (asyncpg).

Learn: asyncpg delivers notifications through a synchronous callback
registered with add_listener(). We don't run business logic there; the
callback only appends to an asyncio.Queue, and receive() drains it with a
real timeout. That keeps the threading model explicit: the pump decides
when events are consumed, the driver only decides when they arrive.

NOTIFY is fire-and-forget. Anything sent while we're disconnected is gone,
so reconnecting just means LISTENing again on a fresh connection.
"""

import asyncio
from typing import Optional

import asyncpg
import structlog

from notifyrelay.listener.errors import ConnectError, ReceiveError
from notifyrelay.listener.models import NotificationEvent
from notifyrelay.sources.base import EventConnection, EventSource

logger = structlog.get_logger()

# Transport failures asyncpg can raise while connecting or talking to the server
_TRANSPORT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)

# Queue marker pushed by the termination listener
_LOST = None


class PostgresConnection(EventConnection):
    """A dedicated asyncpg connection used only for LISTEN."""

    def __init__(self, conn: asyncpg.Connection, probe_timeout: float = 5.0):
        self._conn = conn
        self._probe_timeout = probe_timeout
        self._queue: asyncio.Queue = asyncio.Queue()
        self._channels: set[str] = set()
        self._lost = False
        conn.add_termination_listener(self._on_terminate)

    # ─── asyncpg callbacks ────────────────────────────────

    def _on_notify(self, conn, pid, channel, payload):
        self._queue.put_nowait(
            NotificationEvent(channel=channel, payload=payload, sequence=pid)
        )

    def _on_terminate(self, conn):
        self._queue.put_nowait(_LOST)

    # ─── EventConnection ──────────────────────────────────

    async def subscribe(self, channel: str) -> None:
        if channel in self._channels:
            return
        try:
            await self._conn.add_listener(channel, self._on_notify)
        except _TRANSPORT_ERRORS as e:
            raise ConnectError(f"LISTEN {channel} failed: {e}") from e
        self._channels.add(channel)

    async def receive(self, timeout: float) -> list[NotificationEvent]:
        if self.is_closed:
            raise ReceiveError("connection lost")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=timeout / 2)
        except asyncio.TimeoutError:
            # Idle for half the budget: make sure the socket is still alive. A
            # half-open TCP connection would otherwise look like a quiet channel
            # forever. The probe and the rest of the wait share what's left.
            budget = min(self._probe_timeout, deadline - loop.time())
            if budget > 0:
                await self._probe(budget)
            try:
                first = await asyncio.wait_for(
                    self._queue.get(), timeout=max(0.0, deadline - loop.time())
                )
            except asyncio.TimeoutError:
                return []

        events: list[NotificationEvent] = []
        item: Optional[NotificationEvent] = first
        while True:
            if item is _LOST:
                self._lost = True
                break
            events.append(item)
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

        if not events and self._lost:
            raise ReceiveError("connection terminated by server")
        return events

    async def _probe(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._conn.execute("SELECT 1"), timeout=timeout)
        except _TRANSPORT_ERRORS as e:
            self._lost = True
            raise ReceiveError(f"liveness probe failed: {e}") from e

    async def close(self) -> None:
        if self._conn.is_closed():
            return
        try:
            await self._conn.close(timeout=self._probe_timeout)
        except _TRANSPORT_ERRORS:
            logger.warning("postgres.close_failed", action="terminate")
            self._conn.terminate()

    @property
    def is_closed(self) -> bool:
        return self._lost or self._conn.is_closed()


class PostgresEventSource(EventSource):
    """Opens dedicated LISTEN connections against `dsn`."""

    def __init__(self, dsn: str, connect_timeout: float = 10.0):
        # SQLAlchemy-style URLs (postgresql+asyncpg://) aren't understood by asyncpg
        self.dsn = dsn.replace("+asyncpg", "")
        self.connect_timeout = connect_timeout

    @property
    def name(self) -> str:
        return "postgres"

    async def connect(self) -> PostgresConnection:
        try:
            conn = await asyncpg.connect(self.dsn, timeout=self.connect_timeout)
        except _TRANSPORT_ERRORS as e:
            raise ConnectError(f"connect failed: {e}") from e
        return PostgresConnection(conn, probe_timeout=self.connect_timeout)

    async def publish(self, channel: str, payload: str) -> None:
        try:
            conn = await asyncpg.connect(self.dsn, timeout=self.connect_timeout)
        except _TRANSPORT_ERRORS as e:
            raise ConnectError(f"connect failed: {e}") from e
        try:
            await conn.execute("SELECT pg_notify($1, $2)", channel, payload)
        except _TRANSPORT_ERRORS as e:
            raise ConnectError(f"NOTIFY {channel} failed: {e}") from e
        finally:
            await conn.close()
