"""Listener service tests — end-to-end over the fake source."""

import asyncio

import pytest

from notifyrelay.listener.errors import ConnectError, ReceiveError
from notifyrelay.listener.models import ConnectionState
from notifyrelay.listener.service import EXIT_CONNECTION_FAILED, EXIT_OK, ListenerService


@pytest.mark.asyncio
async def test_events_flow_through_to_handler(make_source, make_event, fast_settings, until):
    """Events survive a mid-stream disconnect and all reach the handler."""
    handled = []

    async def handler(event):
        handled.append(event.payload)

    source = make_source(
        connect_script=[ConnectError("starting up"), None],
        batches=[[make_event("e1"), make_event("e2")], ReceiveError("reset"), [make_event("e3")]],
    )
    service = ListenerService(fast_settings(), source, handler)
    run_task = asyncio.create_task(service.run())

    await until(lambda: len(handled) == 3)
    await service.stop()

    assert await asyncio.wait_for(run_task, timeout=1.0) == EXIT_OK
    assert sorted(handled) == ["e1", "e2", "e3"]
    stats = service.get_stats()
    assert stats["received"] == 3
    assert stats["completed"] == 3
    assert stats["receive_errors"] == 1
    assert stats["healthy"] is True
    assert stats["started_at"] is not None


@pytest.mark.asyncio
async def test_exhausted_budget_exits_with_failure(make_source, fast_settings):
    async def handler(event):
        pass

    source = make_source(connect_script=[ConnectError("db is gone")] * 10)
    service = ListenerService(fast_settings(retry_max_attempts=2), source, handler)

    status = await asyncio.wait_for(service.run(), timeout=2.0)

    assert status == EXIT_CONNECTION_FAILED
    assert not service.healthy
    stats = service.get_stats()
    assert stats["state"] == ConnectionState.FAILED.value
    assert stats["attempts"] == 2


@pytest.mark.asyncio
async def test_handler_aclose_called_on_exit(make_source, fast_settings, until):
    class ClosingHandler:
        def __init__(self):
            self.closed = False

        async def __call__(self, event):
            pass

        async def aclose(self):
            self.closed = True

    handler = ClosingHandler()
    service = ListenerService(fast_settings(), make_source(), handler)
    run_task = asyncio.create_task(service.run())
    await until(lambda: service.supervisor.state == ConnectionState.LISTENING)

    await service.stop()
    await asyncio.wait_for(run_task, timeout=1.0)

    assert handler.closed
