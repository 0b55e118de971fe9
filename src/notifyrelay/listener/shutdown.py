"""Shutdown coordinator — bounded-time teardown.

Learn: Order matters:
1. Stop the pump (no new receive cycles) and wait for its loop to exit
2. Close the dedicated connection. The pump is gone, nobody else uses it
3. Close the dispatcher and give in-flight handlers `drain_timeout`
4. Cancel whatever is still running and log it

Steps 1 and 3 are each bounded, so shutdown can't hang on a stuck
receive or a handler that never returns.
"""

import asyncio
from typing import Optional

import structlog

from notifyrelay.listener.dispatcher import TaskDispatcher
from notifyrelay.listener.models import DrainReport
from notifyrelay.listener.pump import NotificationPump
from notifyrelay.listener.supervisor import ConnectionSupervisor

logger = structlog.get_logger()

# Extra time granted to the pump beyond its own poll/retry bound
PUMP_JOIN_SLACK = 1.0


class ShutdownCoordinator:
    def __init__(
        self,
        pump: NotificationPump,
        supervisor: ConnectionSupervisor,
        dispatcher: TaskDispatcher,
    ):
        self._pump = pump
        self._supervisor = supervisor
        self._dispatcher = dispatcher
        self._lock = asyncio.Lock()
        self._report: Optional[DrainReport] = None

    @property
    def done(self) -> bool:
        return self._report is not None

    async def shutdown(self, drain_timeout: float) -> DrainReport:
        """Run the shutdown sequence once. Later calls return the first report."""
        async with self._lock:
            if self._report is not None:
                return self._report

            logger.info("shutdown.started", drain_timeout=drain_timeout)

            self._pump.stop()
            grace = (
                max(self._pump.poll_timeout, self._supervisor.policy.delay)
                + PUMP_JOIN_SLACK
            )
            await self._pump.join(grace)

            await self._supervisor.close()

            report = await self._dispatcher.drain(drain_timeout)

            logger.info(
                "shutdown.completed",
                drained=report.completed,
                interrupted=len(report.interrupted),
                discarded=report.discarded,
            )
            self._report = report
            return report
