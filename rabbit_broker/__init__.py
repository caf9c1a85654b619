"""Client-side facade over an AMQP 0-9-1 broker.

Modules include configuration, the connection manager and channel
supervisor, topology declarations (with dead-letter wiring), publishing,
consume dispatch with acknowledgment policies, the diagnostics bus, metrics
and tracing helpers.
"""

from rabbit_broker.broker import Broker
from rabbit_broker.channel import ChannelSupervisor
from rabbit_broker.config import Settings
from rabbit_broker.connection import ConnectionManager
from rabbit_broker.consumer import ConsumeDispatcher, Subscription
from rabbit_broker.errors import (
    BrokerConnectionError,
    BrokerError,
    ChannelUnavailableError,
    ConnectionClosedError,
    ConsumeHandlerError,
    ConsumerCancelledError,
    PublishError,
    TopologyError,
)
from rabbit_broker.events import DiagnosticEvent, DiagnosticsBus, EventKind, EventStream, get_diagnostics_bus
from rabbit_broker.models import ConsumeOptions, ExchangeOptions, PublishOptions, QueueOptions
from rabbit_broker.publisher import PublishGateway
from rabbit_broker.topology import TopologyConfigurator

__all__ = [
    "Broker",
    "BrokerConnectionError",
    "BrokerError",
    "ChannelSupervisor",
    "ChannelUnavailableError",
    "ConnectionClosedError",
    "ConnectionManager",
    "ConsumeDispatcher",
    "ConsumeHandlerError",
    "ConsumerCancelledError",
    "ConsumeOptions",
    "DiagnosticEvent",
    "DiagnosticsBus",
    "EventKind",
    "EventStream",
    "ExchangeOptions",
    "PublishError",
    "PublishGateway",
    "PublishOptions",
    "QueueOptions",
    "Settings",
    "Subscription",
    "TopologyConfigurator",
    "TopologyError",
    "get_diagnostics_bus",
]
