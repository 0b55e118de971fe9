"""Listener data model — events, connection state, retry policy.

Learn: Everything here is a value object. NotificationEvent is frozen so
a worker can't mutate an event it received from the pump, and RetryPolicy
is frozen so nothing can loosen the reconnect budget at runtime.
"""

import enum
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union


@dataclass(frozen=True)
class NotificationEvent:
    """One notification delivered by an event source.

    `sequence` is the notifying backend pid for PostgreSQL, or a
    per-connection counter for transports that have no such id.
    """

    channel: str
    payload: str
    sequence: Union[int, str]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def json(self) -> Any:
        """Decode the payload as JSON (triggers usually send json_build_object)."""
        return json.loads(self.payload)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LISTENING = "listening"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryPolicy:
    """Reconnect budget: `max_attempts` consecutive failures, `delay` seconds apart."""

    max_attempts: int = 5
    delay: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must not be negative")


@dataclass
class DrainReport:
    """Outcome of draining the worker pool at shutdown."""

    completed: bool
    interrupted: list[NotificationEvent] = field(default_factory=list)
    discarded: int = 0
