"""Listener service — wires supervisor, pump, dispatcher and shutdown.

Learn: This is the only place that knows about all four components.
Everything else is constructed with just what it needs, so each piece can
be tested with a fake source and a plain async function as the handler.
"""

import inspect
from datetime import datetime, timezone
from typing import Optional

import structlog

from notifyrelay.listener.dispatcher import EventHandler, TaskDispatcher
from notifyrelay.listener.models import ConnectionState, DrainReport
from notifyrelay.listener.pump import NotificationPump
from notifyrelay.listener.shutdown import ShutdownCoordinator
from notifyrelay.listener.supervisor import ConnectionSupervisor
from notifyrelay.sources.base import EventSource

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_CONNECTION_FAILED = 1


class ListenerService:
    """A complete listener: one subscription, one pump, one worker pool."""

    def __init__(self, settings, source: EventSource, handler: EventHandler):
        self.settings = settings
        self.source = source
        self.handler = handler
        self.supervisor = ConnectionSupervisor(source, settings.retry_policy())
        self.dispatcher = TaskDispatcher(
            handler,
            pool_size=settings.worker_pool_size,
            backlog_bound=settings.dispatch_backlog_bound,
        )
        self.pump = NotificationPump(
            self.supervisor,
            self.dispatcher,
            channel=settings.channel_name,
            poll_timeout=settings.poll_timeout,
            heartbeat_interval=settings.heartbeat_interval_s,
        )
        self.coordinator = ShutdownCoordinator(self.pump, self.supervisor, self.dispatcher)
        self.started_at: Optional[datetime] = None

    async def run(self) -> int:
        """Run until stopped or the reconnect budget is exhausted.

        Returns a process exit status: 0 after a requested stop, 1 when the
        connection could not be re-established.
        """
        if self.coordinator.done:
            # Stopped before we got going (e.g. SIGTERM during start-up)
            logger.info("listener.stopped_before_start", channel=self.settings.channel_name)
            await self._close_handler()
            return EXIT_OK

        self.started_at = datetime.now(timezone.utc)
        logger.info(
            "listener.starting",
            source=self.source.name,
            channel=self.settings.channel_name,
            workers=self.settings.worker_pool_size,
            backlog_bound=self.settings.dispatch_backlog_bound,
        )
        self.dispatcher.start()
        self.pump.start()
        try:
            await self.pump.wait()
        finally:
            await self.stop()
            await self._close_handler()

        # Anything other than a connection failure is a bug, let it surface
        if self.pump.error is not None:
            raise self.pump.error
        return EXIT_CONNECTION_FAILED if self.pump.failed else EXIT_OK

    async def stop(self) -> DrainReport:
        """Graceful shutdown. Safe to call more than once."""
        return await self.coordinator.shutdown(self.settings.drain_timeout)

    async def _close_handler(self) -> None:
        # Handlers holding connections (RedisForwarder) expose aclose()
        aclose = getattr(self.handler, "aclose", None)
        if aclose is None:
            return
        result = aclose()
        if inspect.isawaitable(result):
            await result

    @property
    def healthy(self) -> bool:
        return self.supervisor.state != ConnectionState.FAILED

    def get_stats(self) -> dict:
        """Return listener statistics for monitoring."""
        pump = self.pump.stats
        return {
            "source": self.source.name,
            "channel": self.settings.channel_name,
            "state": self.supervisor.state.value,
            "attempts": self.supervisor.attempts,
            "received": pump.received,
            "dispatched": pump.dispatched,
            "dropped": pump.dropped,
            "receive_errors": pump.receive_errors,
            **{
                k: v
                for k, v in self.dispatcher.snapshot().items()
                if k in ("completed", "failed", "in_flight", "queued")
            },
            "healthy": self.healthy,
            "started_at": (
                self.started_at.isoformat()
                if self.started_at
                else None
            ),
        }
