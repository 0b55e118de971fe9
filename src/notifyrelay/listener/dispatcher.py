"""Task dispatcher — fixed worker pool with a bounded backlog.

Learn: The pump calls submit() and moves on; it never awaits a handler.
N worker tasks pull events off an asyncio.Queue and run the handler.

Backpressure is explicit. `backlog_bound` caps how many accepted events
may wait for a free worker; beyond that submit() raises
DispatchSaturatedError and the pump drops the event. An unbounded queue
would just turn a slow handler into unbounded memory growth.

The bound is enforced on an outstanding-events counter rather than
Queue(maxsize=...): a burst of submits lands in the queue before idle
workers get scheduled, and those events aren't really "waiting for a
slot"; a free worker is already parked on get().
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from notifyrelay.listener.errors import DispatchClosedError, DispatchSaturatedError
from notifyrelay.listener.models import DrainReport, NotificationEvent

logger = structlog.get_logger()

EventHandler = Callable[[NotificationEvent], Union[Awaitable[Any], Any]]


@dataclass
class DispatcherStats:
    """Runtime statistics for monitoring."""
    submitted: int = 0
    rejected: int = 0
    completed: int = 0
    failed: int = 0


class TaskDispatcher:
    """Runs a registered handler for each event on one of `pool_size` workers.

    Coroutine handlers are awaited on the loop. Plain callables run in a
    thread (asyncio.to_thread) so a blocking handler can't stall the pump.
    """

    def __init__(self, handler: EventHandler, pool_size: int, backlog_bound: int):
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")
        if backlog_bound < 0:
            raise ValueError("backlog_bound must not be negative")
        self._handler = handler
        self._is_async = inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        )
        self.pool_size = pool_size
        self.backlog_bound = backlog_bound
        self.stats = DispatcherStats()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._in_flight: dict[str, NotificationEvent] = {}
        self._outstanding = 0
        self._closed = False

    # ─── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        """Spawn the worker tasks. Must be called from a running loop."""
        if self._workers or self._closed:
            return
        for i in range(self.pool_size):
            name = f"notifyrelay-worker-{i}"
            self._workers.append(asyncio.create_task(self._worker(name), name=name))
        logger.info(
            "dispatcher.started",
            pool_size=self.pool_size,
            backlog_bound=self.backlog_bound,
        )

    def close(self) -> None:
        """Stop accepting submissions. Accepted events still run."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> int:
        """Handlers executing right now."""
        return len(self._in_flight)

    @property
    def backlog(self) -> int:
        """Accepted events waiting for a free worker."""
        return max(0, self._outstanding - self.pool_size)

    # ─── Submission ───────────────────────────────────────

    def submit(self, event: NotificationEvent) -> None:
        """Hand an event to the pool without waiting for it to run.

        Raises DispatchClosedError after close(), DispatchSaturatedError when
        the backlog is full.
        """
        if self._closed:
            self.stats.rejected += 1
            raise DispatchClosedError("dispatcher is shutting down")
        if self._outstanding >= self.pool_size + self.backlog_bound:
            self.stats.rejected += 1
            raise DispatchSaturatedError(
                f"backlog full ({self.backlog_bound} waiting, {self.pool_size} running)"
            )
        self._outstanding += 1
        self.stats.submitted += 1
        self._queue.put_nowait(event)

    # ─── Workers ──────────────────────────────────────────

    async def _worker(self, name: str) -> None:
        while True:
            event = await self._queue.get()
            self._in_flight[name] = event
            try:
                await self._invoke(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.stats.failed += 1
                logger.exception(
                    "dispatcher.handler_failed",
                    worker=name,
                    channel=event.channel,
                    payload=event.payload,
                    sequence=event.sequence,
                )
            else:
                self.stats.completed += 1
            finally:
                self._in_flight.pop(name, None)
                self._outstanding -= 1
                self._queue.task_done()

    async def _invoke(self, event: NotificationEvent) -> None:
        if self._is_async:
            await self._handler(event)
            return
        result = await asyncio.to_thread(self._handler, event)
        if inspect.isawaitable(result):
            await result

    # ─── Drain ────────────────────────────────────────────

    async def drain(self, timeout: float) -> DrainReport:
        """Close, wait up to `timeout` for accepted events, then cancel the rest.

        Learn: Cancellation only reaches coroutine handlers. A sync handler
        running in a thread keeps going until it returns; we still report
        it as interrupted because nobody will observe its result.
        """
        self.close()
        completed = True
        if self._outstanding:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                completed = False

        interrupted = list(self._in_flight.values())
        discarded = self._discard_queued()

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        for event in interrupted:
            logger.warning(
                "dispatcher.handler_interrupted",
                channel=event.channel,
                payload=event.payload,
                sequence=event.sequence,
            )
        if discarded:
            logger.warning("dispatcher.backlog_discarded", count=discarded)

        logger.info(
            "dispatcher.drained",
            completed=completed,
            interrupted=len(interrupted),
            discarded=discarded,
            handled=self.stats.completed,
            failed=self.stats.failed,
        )
        return DrainReport(completed=completed, interrupted=interrupted, discarded=discarded)

    def _discard_queued(self) -> int:
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            self._queue.task_done()
            self._outstanding -= 1
            count += 1

    def snapshot(self) -> dict:
        """Return dispatcher statistics for monitoring."""
        return {
            "submitted": self.stats.submitted,
            "rejected": self.stats.rejected,
            "completed": self.stats.completed,
            "failed": self.stats.failed,
            "in_flight": self.running,
            "queued": self.backlog,
            "pool_size": self.pool_size,
        }
