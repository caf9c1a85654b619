"""Publishing to queues and exchanges.

Both entrypoints assert their destination right before sending, so a
publish works even when nothing declared the queue/exchange beforehand.
Re-assertion is idempotent; for queues the gateway reuses the options the
topology configurator last declared them with, so dead-letter arguments are
not contradicted.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from aio_pika import DeliveryMode, Message

from rabbit_broker.channel import ChannelSupervisor
from rabbit_broker.config import Settings
from rabbit_broker.constants import DEFAULT_EXCHANGE_TYPE
from rabbit_broker.errors import PublishError
from rabbit_broker.events import DiagnosticsBus, EventKind
from rabbit_broker.metrics import BROKER_PUBLISH_TOTAL
from rabbit_broker.models import ExchangeOptions, ExchangeTypeName, PublishOptions
from rabbit_broker.topology import TopologyConfigurator
from rabbit_broker.tracing import inject_headers


logger = logging.getLogger(__name__)


Payload = Union[bytes, bytearray, memoryview, str]


def encode_payload(payload: Payload) -> bytes:
    """Return ``payload`` as bytes; text is encoded as UTF-8.

    Example:
        >>> encode_payload("héllo")
        b'h\\xc3\\xa9llo'
    """
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"payload must be bytes or str, not {type(payload).__name__}")


class PublishGateway:
    def __init__(
        self,
        channels: ChannelSupervisor,
        topology: TopologyConfigurator,
        settings: Settings,
        bus: DiagnosticsBus,
    ) -> None:
        self._channels = channels
        self._topology = topology
        self._settings = settings
        self._bus = bus

    def build_message(self, payload: Payload, options: PublishOptions) -> Message:
        headers = dict(options.headers or {})
        if self._settings.trace_propagation:
            headers = inject_headers(headers)
        return Message(
            body=encode_payload(payload),
            headers=headers,
            content_type=options.content_type,
            delivery_mode=DeliveryMode.PERSISTENT if options.persistent else DeliveryMode.NOT_PERSISTENT,
            message_id=options.message_id,
            correlation_id=options.correlation_id,
            expiration=options.expiration,
            priority=options.priority,
        )

    async def publish(self, queue: str, payload: Payload, options: Optional[PublishOptions] = None) -> None:
        """Assert ``queue`` then send ``payload`` to it via the default exchange.

        Raises:
            TopologyError: the queue could not be asserted.
            PublishError: the send itself failed.
        """
        opts = options or PublishOptions()
        message = self.build_message(payload, opts)
        await self._topology.setup_queue(queue, self._topology.queue_options(queue))
        channel = await self._channels.ensure_channel()
        try:
            await channel.default_exchange.publish(message, routing_key=queue, mandatory=opts.mandatory)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(exc, f"Failed to publish message to queue {queue!r}") from exc
        self._published(queue, queue, message, opts)
        logger.info("Message published to queue: %s", queue)

    async def publish_to_exchange(
        self,
        exchange: str,
        routing_key: str,
        payload: Payload,
        type: ExchangeTypeName = DEFAULT_EXCHANGE_TYPE,
        options: Optional[PublishOptions] = None,
    ) -> None:
        """Assert ``exchange`` as a durable ``type`` exchange then route ``payload``.

        An existing exchange of a different type makes the assertion fail with
        ``TopologyError``; nothing is sent in that case.
        """
        opts = options or PublishOptions()
        message = self.build_message(payload, opts)
        amqp_exchange = await self._topology.assert_exchange(exchange, type, ExchangeOptions(durable=True))
        try:
            await amqp_exchange.publish(message, routing_key=routing_key, mandatory=opts.mandatory)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(exc, f"Failed to publish message to exchange {exchange!r}") from exc
        self._published(exchange, routing_key, message, opts)
        logger.info(
            "Message published to exchange: %s, routingKey: %s, type: %s", exchange, routing_key, type
        )

    def _fail(self, exc: BaseException, message: str) -> Exception:
        BROKER_PUBLISH_TOTAL.labels(result="failed").inc()
        error = self._channels.classify_failure(exc, PublishError, message)
        logger.error("%s", error)
        self._bus.error(error)
        return error

    def _published(self, destination: str, routing_key: str, message: Message, options: PublishOptions) -> None:
        BROKER_PUBLISH_TOTAL.labels(result="success").inc()
        self._bus.emit(
            EventKind.MESSAGE_PUBLISHED,
            destination=destination,
            routing_key=routing_key,
            details={"size": len(message.body), "persistent": options.persistent},
        )
