"""notifyrelay CLI — run the listener, send test notifications, inspect config.

Usage:
    notifyrelay listen                                  # Listen with NOTIFYRELAY_* settings
    notifyrelay listen -c orders --workers 4            # Override channel / pool size
    notifyrelay notify orders '{"order_id": 42}'        # Send one notification
    notifyrelay settings                                # Print resolved configuration
    notifyrelay sources                                 # Show available transports
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import sys
from typing import Optional

import click
from pydantic import ValidationError

from notifyrelay import __version__
from notifyrelay.config import Settings
from notifyrelay.listener.errors import NotifyRelayError

# Exit status for configuration errors (1 is reserved for "connection failed")
EXIT_CONFIG_ERROR = 2


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        # No running loop: normal CLI invocation
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _redact(url: str) -> str:
    """Hide credentials in a connection URL."""
    scheme, sep, rest = url.partition("://")
    if not sep or "@" not in rest:
        return url
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"


def _load_settings(**overrides) -> Settings:
    """Build Settings from env vars, with non-None CLI flags taking priority."""
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        click.secho("Invalid configuration:", fg="red", err=True)
        for err in e.errors():
            loc = ".".join(str(p) for p in err["loc"]) or "settings"
            click.secho(f"  {loc}: {err['msg']}", fg="red", err=True)
        sys.exit(EXIT_CONFIG_ERROR)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="notifyrelay")
def main():
    """notifyrelay — resilient LISTEN/NOTIFY listener with a bounded worker pool."""


# ---------------------------------------------------------------------------
# notifyrelay listen
# ---------------------------------------------------------------------------


@main.command()
@click.option("--channel", "-c", help="Channel to subscribe to")
@click.option("--source", "-s", help='Transport ("postgres" or "redis")')
@click.option("--handler", help='Handler import path, e.g. "myapp.events:handle"')
@click.option("--workers", "-w", type=int, help="Worker pool size")
@click.option("--backlog", type=int, help="Max queued events before dropping")
@click.option("--poll-timeout-ms", type=int, help="Per-receive blocking bound")
@click.option("--drain-timeout-ms", type=int, help="Shutdown drain bound")
@click.option("--log-level", help="Log level (DEBUG, INFO, ...)")
def listen(channel: Optional[str], source: Optional[str], handler: Optional[str],
           workers: Optional[int], backlog: Optional[int], poll_timeout_ms: Optional[int],
           drain_timeout_ms: Optional[int], log_level: Optional[str]):
    """Subscribe to a channel and dispatch every notification to the handler.

    Exits with status 1 once the reconnect budget is exhausted.
    """
    from notifyrelay.listener.main import configure_logging, run

    settings = _load_settings(
        channel_name=channel,
        source=source,
        handler=handler,
        worker_pool_size=workers,
        dispatch_backlog_bound=backlog,
        poll_timeout_ms=poll_timeout_ms,
        drain_timeout_ms=drain_timeout_ms,
        log_level=log_level,
    )
    configure_logging(settings.log_level)

    try:
        status = _run(run(settings))
    except (NotifyRelayError, ValueError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_CONFIG_ERROR)
    sys.exit(status)


# ---------------------------------------------------------------------------
# notifyrelay notify
# ---------------------------------------------------------------------------


@main.command()
@click.argument("channel")
@click.argument("payload", default="")
@click.option("--source", "-s", help='Transport ("postgres" or "redis")')
def notify(channel: str, payload: str, source: Optional[str]):
    """Send one notification on CHANNEL (handy for checking a running listener)."""
    from notifyrelay.sources import build_source

    settings = _load_settings(source=source, channel_name=channel)
    try:
        src = build_source(settings)
        _run(src.publish(channel, payload))
    except (NotifyRelayError, ValueError) as e:
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)
    click.secho(f"Sent to {src.name}:{channel}", fg="green")


# ---------------------------------------------------------------------------
# notifyrelay settings
# ---------------------------------------------------------------------------


@main.command("settings")
def show_settings():
    """Print the resolved configuration as JSON."""
    settings = _load_settings()
    data = settings.model_dump()
    for key in ("database_url", "redis_url"):
        data[key] = _redact(data[key])
    click.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# notifyrelay sources
# ---------------------------------------------------------------------------


@main.command()
def sources():
    """List registered transports."""
    from notifyrelay.sources import list_sources

    for name in list_sources():
        click.echo(name)


if __name__ == "__main__":
    main()
