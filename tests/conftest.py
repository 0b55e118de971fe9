"""Test fixtures — scripted in-memory event source, no Postgres or Redis needed.

Learn: The listener core only depends on the EventSource / EventConnection
interfaces, so every reconnect and dispatch scenario can be driven by a
fake whose behaviour is scripted up front:

    source = make_source(
        connect_script=[ConnectError("down"), None],   # fail once, then connect
        batches=[[e1, e2], ReceiveError("reset")],     # one batch, then a drop
    )

When the batch script runs dry, receive() behaves like an idle channel and
sleeps for the full poll timeout.
"""

import asyncio
from collections import deque
from typing import Optional

import pytest

from notifyrelay.config import Settings
from notifyrelay.listener.errors import ReceiveError
from notifyrelay.listener.models import NotificationEvent
from notifyrelay.sources.base import EventConnection, EventSource


class FakeConnection(EventConnection):
    def __init__(self, source: "FakeEventSource"):
        self._source = source
        self._closed = False
        self.subscriptions: list[str] = []
        self.close_calls = 0

    async def subscribe(self, channel: str) -> None:
        if self._source.subscribe_error is not None:
            error, self._source.subscribe_error = self._source.subscribe_error, None
            raise error
        if channel not in self.subscriptions:
            self.subscriptions.append(channel)

    async def receive(self, timeout: float) -> list[NotificationEvent]:
        self._source.receive_calls += 1
        if self._closed:
            raise ReceiveError("closed")
        if self._source.batches:
            item = self._source.batches.popleft()
            if isinstance(item, Exception):
                raise item
            return list(item)
        await asyncio.sleep(timeout)
        return []

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed


class FakeEventSource(EventSource):
    def __init__(self, connect_script=None, batches=None):
        # None → connect succeeds, Exception → raised from connect()
        self.connect_script = deque(connect_script or [])
        self.batches = deque(batches or [])
        self.subscribe_error: Optional[Exception] = None
        self.connections: list[FakeConnection] = []
        self.connect_calls = 0
        self.receive_calls = 0
        self.published: list[tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "fake"

    async def connect(self) -> FakeConnection:
        self.connect_calls += 1
        if self.connect_script:
            outcome = self.connect_script.popleft()
            if outcome is not None:
                raise outcome
        conn = FakeConnection(self)
        self.connections.append(conn)
        return conn

    async def publish(self, channel: str, payload: str) -> None:
        self.published.append((channel, payload))


@pytest.fixture()
def make_source():
    """Factory for scripted FakeEventSource instances."""
    return FakeEventSource


@pytest.fixture()
def make_event():
    """Factory for NotificationEvent instances on the 'orders' channel."""
    def _make(payload: str, sequence: int = 1, channel: str = "orders") -> NotificationEvent:
        return NotificationEvent(channel=channel, payload=payload, sequence=sequence)
    return _make


@pytest.fixture()
def fast_settings():
    """Settings with millisecond-scale timings so scenarios finish quickly."""
    def _make(**overrides) -> Settings:
        values = {
            "channel_name": "orders",
            "poll_timeout_ms": 50,
            "retry_max_attempts": 3,
            "retry_delay_ms": 0,
            "worker_pool_size": 2,
            "dispatch_backlog_bound": 4,
            "drain_timeout_ms": 200,
            "heartbeat_interval_s": 60.0,
        }
        values.update(overrides)
        return Settings(**values)
    return _make


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll `predicate` until it's truthy or fail the test after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture()
def until():
    return wait_until
