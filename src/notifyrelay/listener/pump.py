"""Notification pump — the single receive loop.

Learn: One iteration of the loop:
1. supervisor.ensure_listening() → subscribed connection (or None while
   backing off, or ConnectionFailedError when the budget is gone)
2. conn.receive(poll_timeout) → zero or more events, in delivery order
3. dispatcher.submit(event) for each → returns immediately

The only places the pump suspends are the bounded receive and the retry
sleep, so stop() takes effect within one poll timeout / retry delay.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import structlog

from notifyrelay.listener.dispatcher import TaskDispatcher
from notifyrelay.listener.errors import ConnectionFailedError, DispatchError, ReceiveError
from notifyrelay.listener.models import NotificationEvent
from notifyrelay.listener.supervisor import ConnectionSupervisor

logger = structlog.get_logger()


@dataclass
class PumpStats:
    received: int = 0
    dispatched: int = 0
    dropped: int = 0
    receive_errors: int = 0
    idle_polls: int = 0


class NotificationPump:
    def __init__(
        self,
        supervisor: ConnectionSupervisor,
        dispatcher: TaskDispatcher,
        channel: str,
        poll_timeout: float = 1.0,
        heartbeat_interval: float = 60.0,
    ):
        self._supervisor = supervisor
        self._dispatcher = dispatcher
        self.channel = channel
        self.poll_timeout = poll_timeout
        self.heartbeat_interval = heartbeat_interval
        self.stats = PumpStats()
        self._running = False
        self._stop_requested = False
        self._failed = False
        self._task: Optional[asyncio.Task] = None
        self._last_heartbeat = 0.0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def failed(self) -> bool:
        """True when the pump stopped because the reconnect budget ran out."""
        return self._failed

    @property
    def error(self) -> Optional[BaseException]:
        """Unexpected exception that crashed the loop, if any."""
        task = self._task
        if task is None or not task.done() or task.cancelled():
            return None
        return task.exception()

    # ─── Control loop ─────────────────────────────────────

    async def run(self) -> None:
        """Receive and dispatch until stop() or terminal connection failure."""
        if self._stop_requested:
            # stop() arrived before the task was first scheduled
            logger.info("pump.skipped", channel=self.channel)
            return
        self._running = True
        self._last_heartbeat = time.monotonic()
        logger.info("pump.started", channel=self.channel, poll_timeout=self.poll_timeout)

        while self._running:
            try:
                conn = await self._supervisor.ensure_listening(self.channel)
            except ConnectionFailedError as e:
                logger.error("pump.giving_up", channel=self.channel, attempts=e.attempts)
                self._failed = True
                self._running = False
                break

            if conn is None:
                continue

            try:
                events = await conn.receive(self.poll_timeout)
            except ReceiveError as e:
                self.stats.receive_errors += 1
                logger.warning("pump.receive_failed", channel=self.channel, error=str(e))
                await self._supervisor.invalidate()
                continue

            if not events:
                self._on_idle()
                continue

            for event in events:
                self._forward(event)

        logger.info(
            "pump.stopped",
            channel=self.channel,
            failed=self._failed,
            received=self.stats.received,
            dropped=self.stats.dropped,
        )

    def _forward(self, event: NotificationEvent) -> None:
        self.stats.received += 1
        try:
            self._dispatcher.submit(event)
        except DispatchError as e:
            # Dropped, not retried: re-queueing here is the unbounded backlog
            # the dispatcher bound exists to prevent.
            self.stats.dropped += 1
            logger.warning(
                "pump.event_dropped",
                reason=type(e).__name__,
                channel=event.channel,
                payload=event.payload,
                sequence=event.sequence,
            )
        else:
            self.stats.dispatched += 1

    def _on_idle(self) -> None:
        self.stats.idle_polls += 1
        now = time.monotonic()
        if now - self._last_heartbeat >= self.heartbeat_interval:
            self._last_heartbeat = now
            logger.debug(
                "listener.idle",
                channel=self.channel,
                idle_polls=self.stats.idle_polls,
                received=self.stats.received,
            )

    # ─── Task management ──────────────────────────────────

    def start(self) -> asyncio.Task:
        """Run the loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="notifyrelay-pump")
        return self._task

    def stop(self) -> None:
        """Signal the loop to exit after the current receive / retry sleep."""
        if self._running:
            logger.info("pump.stopping", channel=self.channel)
        self._stop_requested = True
        self._running = False

    async def wait(self) -> None:
        """Block until the pump task exits."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def join(self, timeout: float) -> bool:
        """Wait up to `timeout` for the task to exit, cancelling it otherwise.

        Returns True if the loop exited on its own.
        """
        task = self._task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if done:
            return True
        logger.warning("pump.cancelled", channel=self.channel, waited=timeout)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return False
