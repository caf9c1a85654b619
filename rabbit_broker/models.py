"""Pydantic option models for declare, publish and consume calls.

These keep call sites explicit instead of passing loose option dicts around,
and validate values before any broker round-trip happens.
"""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from rabbit_broker.constants import ACK_DELEGATED, ACK_MANAGED


ExchangeTypeName = Literal["direct", "topic", "fanout", "headers"]
AckMode = Literal["managed", "delegated"]


class ExchangeOptions(BaseModel):
    """Exchange declaration flags. Durable unless told otherwise."""
    model_config = ConfigDict(frozen=True)

    durable: bool = True
    auto_delete: bool = False
    internal: bool = False
    arguments: Optional[dict[str, Any]] = None


class QueueOptions(BaseModel):
    """Queue declaration flags and broker arguments (dead-letter wiring, TTL...)."""
    model_config = ConfigDict(frozen=True)

    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    arguments: Optional[dict[str, Any]] = None


class PublishOptions(BaseModel):
    """Per-message publish properties.

    ``persistent`` asks the broker to store the message on disk, on top of the
    queue's own durability.
    """
    model_config = ConfigDict(frozen=True)

    persistent: bool = True
    headers: Optional[dict[str, Any]] = None
    content_type: Optional[str] = None
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    expiration: Optional[int] = Field(default=None, ge=0)
    priority: Optional[int] = Field(default=None, ge=0, le=255)
    mandatory: bool = False


class ConsumeOptions(BaseModel):
    """Subscription behaviour.

    ``requeue_on_failure=True`` (the default) makes a handler that keeps
    failing loop forever unless the queue caps redeliveries broker-side
    (dead-letter exchange plus TTL or ``x-delivery-limit``). Set it to False
    to dead-letter failed deliveries instead.
    """
    model_config = ConfigDict(frozen=True)

    ack_mode: AckMode = ACK_MANAGED
    no_ack: bool = False
    requeue_on_failure: bool = True
    concurrency: Optional[int] = Field(default=None, ge=1)
    exclusive: bool = False
    consumer_tag: Optional[str] = None

    @property
    def delegated(self) -> bool:
        return self.ack_mode == ACK_DELEGATED

    @property
    def dispatcher_settles(self) -> bool:
        """True when the dispatcher itself must ack/nack deliveries."""
        return self.ack_mode == ACK_MANAGED and not self.no_ack
