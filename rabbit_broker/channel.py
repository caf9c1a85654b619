"""Lazy, single-channel supervision.

Every component asks ``ensure_channel()`` right before touching the broker
instead of holding on to a channel: the broker may close a channel at any
time (e.g. after a rejected declaration) and the supervisor transparently
opens a replacement while the connection is still alive.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from aio_pika.abc import AbstractChannel
from aio_pika.exceptions import AMQPConnectionError

from rabbit_broker.config import Settings
from rabbit_broker.connection import ConnectionManager
from rabbit_broker.errors import BrokerError, ChannelUnavailableError, ConnectionClosedError
from rabbit_broker.events import DiagnosticsBus
from rabbit_broker.metrics import BROKER_CHANNEL_OPEN_TOTAL


logger = logging.getLogger(__name__)


class ChannelSupervisor:
    """Owns at most one live channel derived from the managed connection."""

    def __init__(self, connections: ConnectionManager, settings: Settings, bus: DiagnosticsBus) -> None:
        self._connections = connections
        self._settings = settings
        self._bus = bus
        self._channel: Optional[AbstractChannel] = None
        self._opened = 0
        connections.register_dependent(self)

    @property
    def channel(self) -> Optional[AbstractChannel]:
        channel = self._channel
        if channel is None or channel.is_closed:
            return None
        return channel

    @property
    def opened_count(self) -> int:
        """Number of channels opened over this supervisor's lifetime."""
        return self._opened

    def _unavailable(self) -> ChannelUnavailableError:
        if self._connections.was_lost:
            return ConnectionClosedError("Broker connection was lost; call connect() again.")
        return ChannelUnavailableError("Broker channel is not available: not connected.")

    async def ensure_channel(self) -> AbstractChannel:
        """Return a live channel, opening one if needed.

        Raises:
            ConnectionClosedError: the connection was closed by the broker.
            ChannelUnavailableError: there is no connection at all.
        """
        channel = self.channel
        if channel is not None:
            return channel

        connection = self._connections.connection
        if connection is None:
            self._channel = None
            error = self._unavailable()
            self._bus.error(error)
            raise error

        if self._channel is not None:
            logger.warning("Re-establishing broker channel")
        self._channel = None

        try:
            channel = await connection.channel()
            if self._settings.prefetch_count > 0:
                await channel.set_qos(prefetch_count=self._settings.prefetch_count)
        except Exception as exc:  # noqa: BLE001
            error = self.classify_failure(exc, ChannelUnavailableError, "Failed to open broker channel")
            logger.error("%s", error)
            self._bus.error(error)
            raise error from exc

        channel.close_callbacks.add(self._on_channel_closed)
        self._channel = channel
        self._opened += 1
        BROKER_CHANNEL_OPEN_TOTAL.inc()
        logger.info("Broker channel opened")
        return channel

    def _on_channel_closed(self, sender: Any, exc: Optional[BaseException] = None, *_: Any) -> None:
        if sender is self._channel:
            logger.warning("Broker channel closed: %s", exc)
            self._channel = None

    def classify_failure(
        self, exc: Optional[BaseException], fallback: type[BrokerError], message: str
    ) -> BrokerError:
        """Map a protocol exception raised mid-operation onto the error taxonomy.

        A connection lost to the broker/network always wins over the
        operation-specific kind, the same line ``ensure_channel`` draws.
        """
        if isinstance(exc, BrokerError):
            return exc
        if isinstance(exc, AMQPConnectionError) or self._connections.was_lost:
            return ConnectionClosedError(f"{message}: connection closed", cause=exc)
        return fallback(f"{message}: {exc}" if exc is not None else message, cause=exc)

    def invalidate(self) -> None:
        """Forget the channel; the connection it lived on is gone."""
        self._channel = None

    async def close(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None and not channel.is_closed:
            await channel.close()
