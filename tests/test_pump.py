"""Notification pump tests.

Learn: Tests cover:
1. Events reach the dispatcher in delivery order, within and across batches
2. Receive errors trigger invalidate + reconnect
3. Exhausted reconnect budget stops the pump
4. Saturation drops events without stalling the loop
5. Idle channel: no errors, no busy-spin, prompt stop
"""

import asyncio
import time

import pytest

from notifyrelay.listener.dispatcher import TaskDispatcher
from notifyrelay.listener.errors import ConnectError, ReceiveError
from notifyrelay.listener.models import RetryPolicy
from notifyrelay.listener.pump import NotificationPump
from notifyrelay.listener.supervisor import ConnectionSupervisor


class RecordingDispatcher(TaskDispatcher):
    """Keeps a submission-order log, independent of completion order."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.submitted = []

    def submit(self, event):
        super().submit(event)
        self.submitted.append(event.payload)


async def _noop(event):
    pass


def _pump(source, dispatcher, max_attempts=3, delay=0.0, poll_timeout=0.05):
    sup = ConnectionSupervisor(source, RetryPolicy(max_attempts=max_attempts, delay=delay))
    return NotificationPump(sup, dispatcher, channel="orders", poll_timeout=poll_timeout), sup


# ═══════════════════════════════════════════════════════════
# Ordering
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_batch_order_preserved(make_source, make_event, until):
    """[e1, e2, e3] in one batch are submitted in that order, then e4, e5."""
    source = make_source(batches=[
        [make_event("e1", 1), make_event("e2", 2), make_event("e3", 3)],
        [make_event("e4", 4), make_event("e5", 5)],
    ])

    async def jittery(event):
        # Completion order deliberately differs from submission order
        await asyncio.sleep(0.03 if event.payload == "e1" else 0)

    dispatcher = RecordingDispatcher(jittery, pool_size=4, backlog_bound=10)
    dispatcher.start()
    pump, _ = _pump(source, dispatcher)

    pump.start()
    await until(lambda: len(dispatcher.submitted) == 5)
    pump.stop()
    assert await pump.join(1.0)

    assert dispatcher.submitted == ["e1", "e2", "e3", "e4", "e5"]
    assert pump.stats.received == 5
    assert pump.stats.dispatched == 5
    await dispatcher.drain(1.0)


# ═══════════════════════════════════════════════════════════
# Reconnect
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_receive_error_triggers_reconnect(make_source, make_event, until):
    source = make_source(batches=[ReceiveError("connection reset"), [make_event("after")]])
    dispatcher = RecordingDispatcher(_noop, pool_size=1, backlog_bound=10)
    dispatcher.start()
    pump, sup = _pump(source, dispatcher)

    pump.start()
    await until(lambda: dispatcher.submitted == ["after"])
    pump.stop()
    await pump.join(1.0)

    assert source.connect_calls == 2
    assert source.connections[0].close_calls == 1
    assert pump.stats.receive_errors == 1
    await dispatcher.drain(1.0)


@pytest.mark.asyncio
async def test_exhausted_budget_stops_pump(make_source):
    """Terminal connection failure ends run() and marks the pump failed."""
    source = make_source(connect_script=[ConnectError("no route to host")] * 10)
    dispatcher = TaskDispatcher(_noop, pool_size=1, backlog_bound=1)
    pump, _ = _pump(source, dispatcher, max_attempts=3)

    await asyncio.wait_for(pump.run(), timeout=2.0)

    assert pump.failed
    assert not pump.running
    assert source.connect_calls == 3


# ═══════════════════════════════════════════════════════════
# Backpressure
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_saturation_drops_events_and_keeps_going(make_source, make_event, until):
    gate = asyncio.Event()

    async def blocked(event):
        await gate.wait()

    source = make_source(batches=[
        [make_event("e1"), make_event("e2"), make_event("e3")],
        [make_event("e4")],
    ])
    dispatcher = RecordingDispatcher(blocked, pool_size=1, backlog_bound=1)
    dispatcher.start()
    pump, _ = _pump(source, dispatcher)

    pump.start()
    await until(lambda: pump.stats.received == 4)
    pump.stop()
    await pump.join(1.0)

    assert dispatcher.submitted == ["e1", "e2"]
    assert pump.stats.dropped == 2
    gate.set()
    await dispatcher.drain(1.0)


# ═══════════════════════════════════════════════════════════
# Idle channel
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_idle_channel_does_not_spin(make_source):
    """3 × poll_timeout of silence: a handful of polls, no errors, prompt stop."""
    poll_timeout = 0.05
    source = make_source()
    dispatcher = TaskDispatcher(_noop, pool_size=1, backlog_bound=1)
    pump, sup = _pump(source, dispatcher, poll_timeout=poll_timeout)

    task = pump.start()
    await asyncio.sleep(3 * poll_timeout)

    assert not task.done()
    assert pump.stats.receive_errors == 0
    # Each receive blocks for the full timeout, so only ~3 polls happen
    assert 1 <= source.receive_calls <= 5

    stop_at = time.monotonic()
    pump.stop()
    assert await pump.join(1.0)
    assert time.monotonic() - stop_at <= poll_timeout + 0.05
    assert source.connect_calls == 1


@pytest.mark.asyncio
async def test_stop_before_first_schedule_is_honoured(make_source):
    source = make_source()
    dispatcher = TaskDispatcher(_noop, pool_size=1, backlog_bound=1)
    pump, _ = _pump(source, dispatcher)

    pump.start()
    pump.stop()

    assert await pump.join(1.0)
    assert not pump.running
    assert source.connect_calls == 0
