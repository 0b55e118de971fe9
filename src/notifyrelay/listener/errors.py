"""Listener error taxonomy.

Learn: Errors are grouped by who handles them:
- ConnectError / ReceiveError → transient, retried by the supervisor
- ConnectionFailedError → terminal, stops the pump
- DispatchError subclasses → backpressure / shutdown, event is dropped
- HandlerLoadError → start-up configuration problem, fatal
"""


class NotifyRelayError(Exception):
    """Base class for every error raised by notifyrelay."""


class ConnectError(NotifyRelayError):
    """Opening a connection or subscribing to a channel failed."""


class ReceiveError(NotifyRelayError):
    """A receive call on an established connection failed."""


class ConnectionFailedError(NotifyRelayError):
    """The reconnect budget is exhausted. Terminal."""

    def __init__(self, attempts: int):
        super().__init__(f"Giving up after {attempts} consecutive connect failures")
        self.attempts = attempts


class DispatchError(NotifyRelayError):
    pass


class DispatchSaturatedError(DispatchError):
    """The dispatcher backlog is full."""


class DispatchClosedError(DispatchError):
    """The dispatcher no longer accepts submissions (shutdown has begun)."""


class HandlerLoadError(NotifyRelayError):
    pass
