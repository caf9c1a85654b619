"""Exchange, queue, binding and dead-letter declarations.

All declarations are idempotent on the broker side: re-declaring an entity
with identical settings is a no-op, while a conflicting re-declaration
(different exchange type, different queue arguments) is rejected and
surfaces as ``TopologyError``.

Dead-letter layout produced by ``setup_dead_letter_queue("orders",
"orders.dlx", "orders.dlq")``::

    orders.dlx (topic) --#--> orders.dlq
    orders  [x-dead-letter-exchange=orders.dlx]

The dead-letter exchange and queue are declared before the primary queue
references them, otherwise rejected messages would be dead-lettered into an
exchange with nothing bound to it.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from aio_pika import ExchangeType
from aio_pika.abc import AbstractExchange, AbstractQueue

from rabbit_broker.channel import ChannelSupervisor
from rabbit_broker.constants import (
    ARG_DEAD_LETTER_EXCHANGE,
    DEFAULT_DLQ_ROUTING_KEY,
    DEFAULT_DLX_TYPE,
    DEFAULT_EXCHANGE_TYPE,
    EXCHANGE_TYPES,
    STEP_DLQ,
    STEP_DLQ_BIND,
    STEP_DLX,
    STEP_PRIMARY,
)
from rabbit_broker.errors import TopologyError
from rabbit_broker.events import DiagnosticsBus
from rabbit_broker.models import ExchangeOptions, ExchangeTypeName, QueueOptions


logger = logging.getLogger(__name__)


def _exchange_type(name: str) -> ExchangeType:
    if name not in EXCHANGE_TYPES:
        raise TopologyError(
            f"Unknown exchange type {name!r}; expected one of {', '.join(EXCHANGE_TYPES)}."
        )
    return ExchangeType(name)


class TopologyConfigurator:
    """Declares broker objects through the supervised channel.

    Remembers the options each queue was last declared with, so that other
    components re-asserting a queue (the publish gateway) send identical
    arguments and stay idempotent.
    """

    def __init__(self, channels: ChannelSupervisor, bus: DiagnosticsBus) -> None:
        self._channels = channels
        self._bus = bus
        self._queue_options: dict[str, QueueOptions] = {}

    def queue_options(self, queue: str) -> QueueOptions:
        """Options ``queue`` was declared with here, or plain durable defaults."""
        return self._queue_options.get(queue) or QueueOptions()

    def _fail(self, exc: BaseException, message: str, step: Optional[str] = None) -> Exception:
        error = self._channels.classify_failure(exc, TopologyError, message)
        if isinstance(error, TopologyError) and step is not None and error.step is None:
            error.step = step
        logger.error("%s", error)
        self._bus.error(error)
        return error

    async def assert_exchange(
        self,
        name: str,
        type: ExchangeTypeName = DEFAULT_EXCHANGE_TYPE,
        options: Optional[ExchangeOptions] = None,
    ) -> AbstractExchange:
        """Declare exchange ``name`` of ``type`` (durable by default)."""
        try:
            exchange_type = _exchange_type(type)
        except TopologyError as exc:
            self._bus.error(exc)
            raise
        opts = options or ExchangeOptions()
        channel = await self._channels.ensure_channel()
        try:
            exchange = await channel.declare_exchange(
                name,
                exchange_type,
                durable=opts.durable,
                auto_delete=opts.auto_delete,
                internal=opts.internal,
                arguments=opts.arguments,
            )
        except Exception as exc:  # noqa: BLE001
            raise self._fail(exc, f"Failed to assert exchange {name!r}", step="exchange") from exc
        logger.info("Exchange asserted: %s (%s)", name, exchange_type.value)
        return exchange

    async def setup_queue(self, name: str, options: Optional[QueueOptions] = None) -> AbstractQueue:
        """Declare queue ``name`` (durable by default) with optional arguments."""
        opts = options or QueueOptions()
        channel = await self._channels.ensure_channel()
        try:
            queue = await channel.declare_queue(
                name,
                durable=opts.durable,
                exclusive=opts.exclusive,
                auto_delete=opts.auto_delete,
                arguments=opts.arguments,
            )
        except Exception as exc:  # noqa: BLE001
            raise self._fail(exc, f"Failed to set up queue {name!r}", step="queue") from exc
        self._queue_options[name] = opts
        logger.info("Queue set up: %s", name)
        return queue

    async def bind_queue(
        self,
        queue: str,
        exchange: str,
        routing_key: str = "",
        arguments: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Bind ``queue`` to ``exchange`` with ``routing_key``. Both must exist."""
        channel = await self._channels.ensure_channel()
        try:
            # No passive declare: the bind itself fails if the queue is missing
            amqp_queue = await channel.get_queue(queue, ensure=False)
            await amqp_queue.bind(exchange, routing_key=routing_key, arguments=dict(arguments) if arguments else None)
        except Exception as exc:  # noqa: BLE001
            raise self._fail(exc, f"Failed to bind queue {queue!r} to exchange {exchange!r}", step="bind") from exc
        logger.info('Queue "%s" bound to exchange "%s" with routing key "%s"', queue, exchange, routing_key)

    async def setup_dead_letter_queue(
        self,
        queue: str,
        dlx: str,
        dlq: str,
        dlx_type: ExchangeTypeName = DEFAULT_DLX_TYPE,
        dlq_routing_key: str = DEFAULT_DLQ_ROUTING_KEY,
        queue_arguments: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Wire ``queue`` to dead-letter into ``dlx`` -> ``dlq``.

        Order: declare ``dlx``, declare ``dlq``, bind ``dlq`` to ``dlx`` with
        ``dlq_routing_key``, declare ``queue`` with
        ``x-dead-letter-exchange=dlx``. Extra ``queue_arguments`` (TTL,
        delivery limit, dead-letter routing key) are merged into the primary
        queue's arguments.

        A failing step stops the sequence and raises ``TopologyError`` with
        ``step`` set and ``completed`` listing the steps that already took
        effect; nothing is rolled back or retried.
        """
        arguments: dict[str, Any] = dict(queue_arguments or {})
        arguments[ARG_DEAD_LETTER_EXCHANGE] = dlx

        completed: list[str] = []
        steps = (
            (STEP_DLX, lambda: self.assert_exchange(dlx, dlx_type, ExchangeOptions(durable=True))),
            (STEP_DLQ, lambda: self.setup_queue(dlq, QueueOptions(durable=True))),
            (STEP_DLQ_BIND, lambda: self.bind_queue(dlq, dlx, dlq_routing_key)),
            (STEP_PRIMARY, lambda: self.setup_queue(queue, QueueOptions(durable=True, arguments=arguments))),
        )
        for step, run in steps:
            try:
                await run()
            except TopologyError as exc:
                raise TopologyError(
                    f"Dead-letter setup for {queue!r} failed at {step} after {completed or 'no steps'}; "
                    "topology may be partially declared",
                    cause=exc.cause or exc,
                    step=step,
                    completed=tuple(completed),
                ) from exc
            completed.append(step)

        logger.info(
            "Dead-letter queue set up: %s bound to exchange: %s, type: %s, routingKey: %s",
            dlq,
            dlx,
            dlx_type,
            dlq_routing_key,
        )
