"""Redis pub/sub transport.

Learn: Redis PUBLISH has the same delivery semantics as PG NOTIFY: if
no subscriber is connected, the message is lost. get_message(timeout=...)
gives us a native bounded wait, so there's no callback to bridge here.

Redis doesn't tell us who published a message, so `sequence` is a
per-connection counter.
"""

import itertools
import json
from typing import Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from notifyrelay.listener.errors import ConnectError, ReceiveError
from notifyrelay.listener.models import NotificationEvent
from notifyrelay.sources.base import EventConnection, EventSource

logger = structlog.get_logger()

_TRANSPORT_ERRORS = (OSError, RedisError)


def _text(value) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


class RedisConnection(EventConnection):
    def __init__(self, client: aioredis.Redis):
        self._client = client
        self._pubsub = client.pubsub()
        self._channels: set[str] = set()
        self._counter = itertools.count(1)
        self._closed = False
        self._released = False

    async def subscribe(self, channel: str) -> None:
        if channel in self._channels:
            return
        try:
            await self._pubsub.subscribe(channel)
        except _TRANSPORT_ERRORS as e:
            raise ConnectError(f"SUBSCRIBE {channel} failed: {e}") from e
        self._channels.add(channel)

    async def receive(self, timeout: float) -> list[NotificationEvent]:
        if self._closed:
            raise ReceiveError("connection closed")

        events: list[NotificationEvent] = []
        wait: Optional[float] = timeout
        try:
            while True:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=wait
                )
                if message is None:
                    break
                if message["type"] != "message":
                    continue
                events.append(
                    NotificationEvent(
                        channel=_text(message["channel"]),
                        payload=_text(message["data"]),
                        sequence=next(self._counter),
                    )
                )
                # Sweep up whatever is already buffered without waiting again
                wait = 0.0
        except _TRANSPORT_ERRORS as e:
            self._closed = True
            raise ReceiveError(f"pub/sub read failed: {e}") from e
        return events

    async def close(self) -> None:
        if self._released:
            return
        self._released = True
        self._closed = True
        try:
            await self._pubsub.aclose()
            await self._client.aclose()
        except _TRANSPORT_ERRORS:
            logger.warning("redis.close_failed")

    @property
    def is_closed(self) -> bool:
        return self._closed


class RedisEventSource(EventSource):
    def __init__(self, url: str, connect_timeout: float = 10.0):
        self.url = url
        self.connect_timeout = connect_timeout

    @property
    def name(self) -> str:
        return "redis"

    def _client(self) -> aioredis.Redis:
        return aioredis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=self.connect_timeout,
        )

    async def connect(self) -> RedisConnection:
        client = self._client()
        try:
            # Verify connection
            await client.ping()
        except _TRANSPORT_ERRORS as e:
            await client.aclose()
            raise ConnectError(f"connect failed: {e}") from e
        return RedisConnection(client)

    async def publish(self, channel: str, payload: str) -> None:
        client = self._client()
        try:
            await client.publish(channel, payload)
        except _TRANSPORT_ERRORS as e:
            raise ConnectError(f"publish failed: {e}") from e
        finally:
            await client.aclose()


def encode_forwarded(event: NotificationEvent) -> str:
    """JSON envelope used when re-publishing an event to Redis."""
    return json.dumps({
        "channel": event.channel,
        "payload": event.payload,
        "sequence": event.sequence,
        "received_at": event.received_at.isoformat(),
    })
