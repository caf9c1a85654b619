"""Shared names for topology arguments, defaults and acknowledgment modes.

Queue arguments (reserved ``x-`` keys understood by the broker, passed through
``QueueOptions.arguments`` or ``queue_arguments``):
- ``x-dead-letter-exchange``: where rejected/expired messages are re-published.
- ``x-dead-letter-routing-key``: optional routing key override for those messages.
- ``x-message-ttl``: per-queue message lifetime in milliseconds.
- ``x-delivery-limit``: redelivery cap on quorum queues.

Acknowledgment modes (``ConsumeOptions.ack_mode``):
- ``managed``: the dispatcher acks on handler success and nacks (requeue by
  default) on handler failure.
- ``delegated``: the handler receives the channel and owns ack/nack entirely.
"""

EXCHANGE_TYPES = ("direct", "topic", "fanout", "headers")

DEFAULT_EXCHANGE_TYPE = "topic"
DEFAULT_DLX_TYPE = "topic"
DEFAULT_DLQ_ROUTING_KEY = "#"

ARG_DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
ARG_MESSAGE_TTL = "x-message-ttl"

ACK_MANAGED = "managed"
ACK_DELEGATED = "delegated"

SUPPORTED_SCHEMES = ("amqp", "amqps")

# Dead-letter setup steps, in execution order
STEP_DLX = "declare_dead_letter_exchange"
STEP_DLQ = "declare_dead_letter_queue"
STEP_DLQ_BIND = "bind_dead_letter_queue"
STEP_PRIMARY = "declare_primary_queue"
