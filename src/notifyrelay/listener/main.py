"""Listener entry point — run as a separate process.

Learn: The listener is its own process, separate from whatever writes the
notifications. If it dies, producers keep running; it just misses NOTIFYs
until it's back (they're fire-and-forget anyway).

Usage:
    python -m notifyrelay.listener.main

Or via the CLI:
    notifyrelay listen --channel new_message
"""

import asyncio
import logging
import signal
import sys

import structlog

from notifyrelay import config
from notifyrelay.config import Settings
from notifyrelay.handlers import load_handler
from notifyrelay.listener.service import ListenerService
from notifyrelay.sources import build_source

logger = logging.getLogger("notifyrelay.listener")


def configure_logging(level: str = "INFO") -> None:
    """Apply `level` to both stdlib logging and structlog."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # structlog's default logger doesn't filter; component events go through it
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))


async def run(settings: Settings) -> int:
    """Run the listener until interrupted. Returns the exit status."""
    source = build_source(settings)
    handler = load_handler(settings.handler, settings)
    service = ListenerService(settings, source, handler)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

    logger.info(
        "Listener starting (source=%s, channel=%s, handler=%s)",
        source.name,
        settings.channel_name,
        settings.handler,
    )

    try:
        status = await service.run()
    finally:
        logger.info("Listener stopped. Stats: %s", service.get_stats())

    if status != 0:
        logger.error("Reconnect budget exhausted, exiting with status %d", status)
    return status


def main():
    """CLI entry point."""
    settings = config.settings
    configure_logging(settings.log_level)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
