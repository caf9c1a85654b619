"""
Exception taxonomy for broker operations.

Connect, topology and publish failures are raised to the immediate caller
(and mirrored on the diagnostics bus). ``ConsumeHandlerError`` and
``ConsumerCancelledError`` never leave the library: they happen while no
caller is waiting and only reach the bus (and, for handler failures, the
subscription's ``on_error`` callback).
"""

from typing import Optional


class BrokerError(Exception):
    """Base exception for all broker facade errors."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class BrokerConnectionError(BrokerError, ConnectionError):
    """Raised when the URL is missing/malformed or the handshake fails."""


class ChannelUnavailableError(BrokerError):
    """Raised when there is no live connection to open a channel on."""


class ConnectionClosedError(ChannelUnavailableError):
    """Raised when the connection was closed underneath the caller.

    The caller must ``connect()`` again; the library never reconnects on its own.
    """


class TopologyError(BrokerError):
    """Raised when the broker rejects a declare or bind."""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        step: Optional[str] = None,
        completed: tuple[str, ...] = (),
    ):
        super().__init__(message, cause=cause)
        self.step = step
        self.completed = completed


class PublishError(BrokerError):
    """Raised when sending fails after the destination was asserted."""


class ConsumerCancelledError(BrokerError):
    """A subscription stopped receiving deliveries without the caller cancelling it.

    Either the broker cancelled the consumer or the channel it lived on was
    closed; ``cause`` holds the channel/connection error when there is one.
    """

    def __init__(self, queue: str, reason: str, *, cause: Optional[BaseException] = None):
        super().__init__(f"Consumer on queue {queue!r} stopped: {reason}", cause=cause)
        self.queue = queue


class ConsumeHandlerError(BrokerError):
    """Wraps an exception raised by a consumer handler."""

    def __init__(self, queue: str, delivery_tag: Optional[int], *, cause: BaseException):
        super().__init__(
            f"Handler for queue {queue!r} failed on delivery {delivery_tag}: {cause!r}",
            cause=cause,
        )
        self.queue = queue
        self.delivery_tag = delivery_tag
