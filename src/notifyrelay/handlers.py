"""Event handlers — what the worker pool runs for each notification.

Learn: A handler is any callable taking a NotificationEvent. Coroutine
functions are awaited on the event loop; plain functions run in a worker
thread. It's registered once, by import path:

    NOTIFYRELAY_HANDLER=myapp.listeners:on_new_message

If the attribute is a class, it's instantiated with the Settings object
(see RedisForwarder) so handlers can hold their own connections.
"""

import importlib
import inspect
from typing import Optional

import redis.asyncio as aioredis
import structlog

from notifyrelay.listener.errors import HandlerLoadError
from notifyrelay.listener.models import NotificationEvent
from notifyrelay.sources.redis_pubsub import encode_forwarded

logger = structlog.get_logger()


async def log_event(event: NotificationEvent) -> None:
    """Default handler: log every notification."""
    logger.info(
        "event.received",
        channel=event.channel,
        sequence=event.sequence,
        payload=event.payload,
    )


class RedisForwarder:
    """Re-publish each event to Redis for real-time consumers.

    Learn: Redis pub/sub is fire-and-forget, same as NOTIFY. Channel naming
    is {prefix}:{source channel} so a WebSocket layer can subscribe per
    channel.
    """

    def __init__(self, settings):
        self.prefix = settings.forward_prefix
        self._redis: Optional[aioredis.Redis] = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    async def __call__(self, event: NotificationEvent) -> None:
        if self._redis is None:
            raise RuntimeError("RedisForwarder is closed")
        await self._redis.publish(f"{self.prefix}:{event.channel}", encode_forwarded(event))

    async def aclose(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def load_handler(path: str, settings=None):
    """Resolve a 'package.module:attribute' path to a handler callable.

    Raises HandlerLoadError if the path is malformed, the import fails,
    or the target isn't callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise HandlerLoadError(f"Handler path must look like 'module:attribute', got '{path}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise HandlerLoadError(f"Cannot import handler module '{module_name}': {e}") from e

    target = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise HandlerLoadError(f"'{module_name}' has no attribute '{attr}'") from e

    if inspect.isclass(target):
        target = target(settings)

    if not callable(target):
        raise HandlerLoadError(f"Handler '{path}' is not callable")
    return target
