"""Connection supervisor — keeps one subscribed connection alive.

Learn: The supervisor is a small state machine:

  DISCONNECTED → CONNECTING → LISTENING
                     │  ▲          │
          (failure)  ▼  │          │ invalidate()
                DISCONNECTED ◄─────┘
                     │
                     ▼ (max_attempts consecutive failures)
                   FAILED (terminal)

The attempt counter belongs to one reconnection episode. Every successful
subscribe resets it, so a connection that stays up for a week and then
drops gets the full retry budget again.
"""

import asyncio
from typing import Optional

import structlog

from notifyrelay.listener.errors import ConnectError, ConnectionFailedError
from notifyrelay.listener.models import ConnectionState, RetryPolicy
from notifyrelay.sources.base import EventConnection, EventSource

logger = structlog.get_logger()


class ConnectionSupervisor:
    """Owns the dedicated connection to an EventSource.

    Only the pump talks to the supervisor, so no locking is needed: all
    calls happen on one task.
    """

    def __init__(self, source: EventSource, policy: RetryPolicy):
        self._source = source
        self._policy = policy
        self._state = ConnectionState.DISCONNECTED
        self._conn: Optional[EventConnection] = None
        self._attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        """Consecutive failed attempts in the current reconnection episode."""
        return self._attempts

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def ensure_listening(self, channel: str) -> Optional[EventConnection]:
        """Return a subscribed connection, or None after a failed (and slept-off) attempt.

        Raises ConnectionFailedError once the retry budget is exhausted.
        """
        if self._state == ConnectionState.FAILED:
            raise ConnectionFailedError(self._attempts)

        if self._state == ConnectionState.LISTENING:
            if self._conn is not None and not self._conn.is_closed:
                return self._conn
            # Dropped underneath us without a receive error
            logger.warning("listener.connection_lost", channel=channel)
            await self._discard_connection()
            self._state = ConnectionState.DISCONNECTED

        self._state = ConnectionState.CONNECTING
        conn: Optional[EventConnection] = None
        try:
            conn = await self._source.connect()
            await conn.subscribe(channel)
        except ConnectError as e:
            if conn is not None:
                await self._close_quietly(conn)
            return await self._on_failure(channel, e)

        self._conn = conn
        self._state = ConnectionState.LISTENING
        if self._attempts:
            logger.info(
                "listener.reconnected",
                channel=channel,
                source=self._source.name,
                after_attempts=self._attempts,
            )
        else:
            logger.info("listener.connected", channel=channel, source=self._source.name)
        self._attempts = 0
        return conn

    async def _on_failure(self, channel: str, error: Exception) -> None:
        self._attempts += 1

        if self._attempts >= self._policy.max_attempts:
            self._state = ConnectionState.FAILED
            logger.error(
                "listener.reconnect_exhausted",
                channel=channel,
                attempts=self._attempts,
                error=str(error),
            )
            raise ConnectionFailedError(self._attempts) from error

        self._state = ConnectionState.DISCONNECTED
        logger.warning(
            "listener.connect_failed",
            channel=channel,
            attempt=self._attempts,
            max_attempts=self._policy.max_attempts,
            retry_in=self._policy.delay,
            error=str(error),
        )
        await asyncio.sleep(self._policy.delay)
        return None

    async def invalidate(self) -> None:
        """Drop the current connection after a receive error."""
        if self._state == ConnectionState.FAILED:
            return
        await self._discard_connection()
        self._state = ConnectionState.DISCONNECTED

    async def close(self) -> None:
        """Close the connection for shutdown. A FAILED supervisor stays FAILED."""
        await self._discard_connection()
        if self._state != ConnectionState.FAILED:
            self._state = ConnectionState.DISCONNECTED

    async def _discard_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await self._close_quietly(conn)

    async def _close_quietly(self, conn: EventConnection) -> None:
        # Closing a broken connection often fails too, it's already gone
        try:
            await conn.close()
        except Exception:
            logger.debug("listener.close_failed", exc_info=True)
