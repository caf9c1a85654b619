"""
Consume dispatcher.

- Registers one broker consumer per ``consume()`` call and returns a ``Subscription``
- Runs the caller's handler for each delivery, one at a time per subscription
  (``ConsumeOptions.concurrency`` raises that bound), concurrently across subscriptions
- Applies the acknowledgment policy (managed or delegated, see ``rabbit_broker.constants``)
- Contains handler failures: they are reported as ``ConsumeHandlerError`` on the
  diagnostics bus and to ``on_error``, never raised back to the ``consume()`` caller
- Marks a subscription inactive and emits ``ConsumerCancelledError`` when its
  channel closes (a rejected declaration elsewhere, a lost connection) or the
  broker cancels the consumer; nothing re-subscribes automatically

Managed acknowledgment nacks failed deliveries with ``requeue=True`` by default.
A message that always fails is therefore redelivered forever unless the queue
caps it broker-side (dead-letter exchange with TTL or ``x-delivery-limit``), or
the subscription is created with ``requeue_on_failure=False``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Optional

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue
from opentelemetry import context  # type: ignore

from rabbit_broker.channel import ChannelSupervisor
from rabbit_broker.config import Settings
from rabbit_broker.errors import (
    BrokerError,
    ChannelUnavailableError,
    ConsumeHandlerError,
    ConsumerCancelledError,
    TopologyError,
)
from rabbit_broker.events import DiagnosticsBus, EventKind
from rabbit_broker.metrics import BROKER_CONSUME_TOTAL, BROKER_HANDLER_LATENCY_SECONDS
from rabbit_broker.models import ConsumeOptions
from rabbit_broker.tracing import extract_context_from_headers, get_tracer


logger = logging.getLogger(__name__)


# handler(message) in managed mode, handler(message, channel) in delegated mode;
# plain functions and coroutine functions are both accepted.
Handler = Callable[..., Any]
ErrorCallback = Callable[[ConsumeHandlerError], Any]


class Subscription:
    """A live consumer registration on one queue.

    Properties:
    - `queue`: queue name
    - `consumer_tag`: broker consumer tag
    - `channel`: the channel the consumer (and its acks) are bound to
    - `active`: False once cancelled, by the caller, the broker or a channel close
    - `in_flight`: number of deliveries whose handler is currently running
    """

    def __init__(
        self,
        queue: str,
        channel: AbstractChannel,
        amqp_queue: AbstractQueue,
        options: ConsumeOptions,
        concurrency: int,
    ) -> None:
        self.queue = queue
        self.channel = channel
        self.options = options
        self.consumer_tag: Optional[str] = None
        self._amqp_queue = amqp_queue
        self._sem = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._in_flight = 0
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def cancel(self, timeout: Optional[float] = None) -> bool:
        """Stop new deliveries, then wait for running handlers to finish.

        Returns True when every in-flight handler completed. With ``timeout``
        set, handlers still running afterwards are left to finish on their own
        (never cancelled) and False is returned.
        """
        if self._active:
            self._active = False
            if self.consumer_tag is not None and not self.channel.is_closed:
                try:
                    await self._amqp_queue.cancel(self.consumer_tag)
                except Exception as exc:  # noqa: BLE001
                    # The channel went away: the broker already dropped the consumer
                    logger.warning("Could not cancel consumer %s on %s: %s", self.consumer_tag, self.queue, exc)
            logger.info("Consumer cancelled for queue: %s", self.queue)

        current = asyncio.current_task()
        pending = {t for t in self._tasks if not t.done() and t is not current}
        if not pending:
            return True
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning(
                "%d handler(s) for queue %s still running after cancel", len(still_running), self.queue
            )
            return False
        return True

    def _track(self) -> Optional[asyncio.Task[Any]]:
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
        return task

    def _untrack(self, task: Optional[asyncio.Task[Any]]) -> None:
        if task is not None:
            self._tasks.discard(task)


class ConsumeDispatcher:
    def __init__(self, channels: ChannelSupervisor, settings: Settings, bus: DiagnosticsBus) -> None:
        self._channels = channels
        self._settings = settings
        self._bus = bus
        self._subscriptions: list[Subscription] = []
        self._tracer = get_tracer()

    @property
    def subscriptions(self) -> list[Subscription]:
        return [s for s in self._subscriptions if s.active]

    async def consume(
        self,
        queue: str,
        handler: Handler,
        options: Optional[ConsumeOptions] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Register ``handler`` for deliveries from ``queue``.

        Returns once the broker accepted the consumer. Failures of the
        registration itself raise (``TopologyError`` when the broker refuses,
        e.g. unknown queue); failures of later handler calls only reach the
        diagnostics bus and ``on_error``.
        """
        opts = options or ConsumeOptions()
        concurrency = opts.concurrency or max(1, self._settings.consumer_concurrency)
        channel = await self._channels.ensure_channel()
        try:
            amqp_queue = await channel.get_queue(queue, ensure=False)
            subscription = Subscription(queue, channel, amqp_queue, opts, concurrency)

            async def on_message(message: Optional[AbstractIncomingMessage]) -> None:
                await self._dispatch(subscription, handler, on_error, message)

            subscription.consumer_tag = await amqp_queue.consume(
                on_message,
                no_ack=opts.no_ack,
                exclusive=opts.exclusive,
                consumer_tag=opts.consumer_tag,
            )
        except Exception as exc:  # noqa: BLE001
            error = self._channels.classify_failure(exc, TopologyError, f"Failed to set up consumer for {queue!r}")
            logger.error("%s", error)
            self._bus.error(error)
            raise error from exc

        def on_channel_closed(sender: Any, exc: Optional[BaseException] = None, *_: Any) -> None:
            cause = self._channels.classify_failure(
                exc if isinstance(exc, BaseException) else None,
                ChannelUnavailableError,
                f"Channel of consumer on {queue!r} closed",
            )
            self._stopped(subscription, "channel closed", cause)

        channel.close_callbacks.add(on_channel_closed)
        self._subscriptions.append(subscription)
        logger.info("Consumer set up for queue: %s (ack_mode=%s)", queue, opts.ack_mode)
        return subscription

    async def cancel_all(self, timeout: Optional[float] = None) -> None:
        for subscription in list(self._subscriptions):
            await subscription.cancel(timeout=timeout)
        self._subscriptions.clear()

    def _stopped(self, subscription: Subscription, reason: str, cause: Optional[BaseException] = None) -> None:
        """Mark a subscription dead after the broker side dropped its consumer."""
        if not subscription.active:
            return
        subscription._active = False
        error = ConsumerCancelledError(subscription.queue, reason, cause=cause)
        logger.warning("%s", error)
        self._bus.error(error, queue=subscription.queue)

    async def _dispatch(
        self,
        subscription: Subscription,
        handler: Handler,
        on_error: Optional[ErrorCallback],
        message: Optional[AbstractIncomingMessage],
    ) -> None:
        if message is None:
            # Consumer cancelled by the broker (queue deleted, node failover...)
            self._stopped(subscription, "cancelled by broker")
            return
        task = subscription._track()
        try:
            async with subscription._sem:
                subscription._in_flight += 1
                try:
                    await self._handle(subscription, handler, on_error, message)
                finally:
                    subscription._in_flight -= 1
        finally:
            subscription._untrack(task)

    async def _handle(
        self,
        subscription: Subscription,
        handler: Handler,
        on_error: Optional[ErrorCallback],
        message: AbstractIncomingMessage,
    ) -> None:
        queue = subscription.queue
        opts = subscription.options
        self._bus.emit(
            EventKind.MESSAGE_CONSUMED,
            queue=queue,
            details={"delivery_tag": message.delivery_tag, "redelivered": message.redelivered},
        )

        start_ts = time.perf_counter()
        token = None
        if self._settings.trace_propagation:
            token = context.attach(extract_context_from_headers(message.headers))
        try:
            with self._tracer.start_as_current_span("consume") as span:
                span.set_attribute("messaging.destination", queue)
                if opts.delegated:
                    result = handler(message, subscription.channel)
                else:
                    result = handler(message)
                if inspect.isawaitable(result):
                    await result
        except Exception as exc:  # noqa: BLE001
            BROKER_CONSUME_TOTAL.labels(queue=queue, outcome="failed").inc()
            error = ConsumeHandlerError(queue, message.delivery_tag, cause=exc)
            logger.exception("Message handling failed for queue %s", queue)
            if opts.dispatcher_settles and not getattr(message, "processed", False):
                await self._settle(subscription, message, "nack", requeue=opts.requeue_on_failure)
            await self._report(error, on_error)
            return
        finally:
            BROKER_HANDLER_LATENCY_SECONDS.observe(time.perf_counter() - start_ts)
            if token is not None:
                context.detach(token)

        BROKER_CONSUME_TOTAL.labels(queue=queue, outcome="success").inc()
        if opts.dispatcher_settles and not getattr(message, "processed", False):
            await self._settle(subscription, message, "ack")

    async def _settle(
        self, subscription: Subscription, message: AbstractIncomingMessage, action: str, requeue: bool = True
    ) -> None:
        """Ack or nack a delivery; a failure here is reported, never raised."""
        try:
            if action == "ack":
                await message.ack()
            else:
                await message.nack(requeue=requeue)
        except Exception as exc:  # noqa: BLE001
            error = self._channels.classify_failure(
                exc,
                ChannelUnavailableError,
                f"Failed to {action} delivery {message.delivery_tag} on {subscription.queue!r}",
            )
            logger.warning("%s", error)
            self._bus.error(error, queue=subscription.queue)

    async def _report(self, error: BrokerError, on_error: Optional[ErrorCallback]) -> None:
        self._bus.error(error, queue=getattr(error, "queue", None))
        if on_error is None:
            return
        try:
            result = on_error(error)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.exception("on_error callback failed")
