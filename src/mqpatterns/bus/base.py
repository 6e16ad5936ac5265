"""Message bus interface.

This is the (small) contract the correlation and pattern clients are
written against. Implementations live beside it: an in-process bus for
tests and demos, and a RabbitMQ bus backed by pika.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from ..errors import BusError, BusUnavailable


# Exchange kinds.

DIRECT = "direct"
FANOUT = "fanout"
TOPIC = "topic"

KINDS = (DIRECT, FANOUT, TOPIC)


class Properties:
    """Metadata carried alongside a message body."""

    def __init__(
        self,
        reply_to: Optional[str] = None,
        correlation_id: Optional[str] = None,
        content_type: Optional[str] = None,
        content_encoding: Optional[str] = None,
        persistent: bool = False,
    ):
        self.reply_to = reply_to
        self.correlation_id = correlation_id
        self.content_type = content_type
        self.content_encoding = content_encoding
        self.persistent = persistent

    def __repr__(self) -> str:
        fields = []
        for name in ("reply_to", "correlation_id", "content_type", "content_encoding"):
            value = getattr(self, name)
            if value is not None:
                fields.append(f"{name}={value!r}")
        if self.persistent:
            fields.append("persistent=True")
        return "Properties(" + ", ".join(fields) + ")"


class Delivery:
    """One message handed to a subscriber.

    The *tag* is the acknowledgement handle; it is only meaningful to the
    bus that produced the delivery.
    """

    def __init__(
        self,
        exchange: str,
        routing_key: str,
        properties: Properties,
        body: bytes,
        tag: int,
        consumer_tag: Optional[str] = None,
        redelivered: bool = False,
    ):
        self.exchange = exchange
        self.routing_key = routing_key
        self.properties = properties
        self.body = body
        self.tag = tag
        self.consumer_tag = consumer_tag
        self.redelivered = redelivered

    def __repr__(self) -> str:
        return (
            f"Delivery({self.exchange!r}, {self.routing_key!r}, "
            f"{self.properties!r}, {self.body!r}, tag={self.tag})"
        )


DeliveryCallback = Callable[[Delivery], None]


def encode(payload: Union[str, bytes, bytearray]) -> bytes:
    """Return *payload* as bytes; strings are encoded as UTF-8."""

    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise TypeError(f"payload must be str or bytes, not {type(payload).__name__}")


class MessageBus(ABC):
    """Minimal contract for a message bus channel.

    One instance corresponds to one connection/channel pair and is owned by
    a single client. Delivery callbacks run on a thread owned by the bus,
    concurrently with the owner's own calls.
    """

    @abstractmethod
    def declare_exchange(self, name: str, kind: str = DIRECT, durable: bool = False) -> None:
        """Declare an exchange; redeclaring with the same attributes is a
        no-op, with different attributes raises TopologyMismatch."""

    @abstractmethod
    def declare_queue(
        self,
        name: str = "",
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        """Declare a queue and return its name. An empty *name* requests a
        unique, bus-assigned name."""

    @abstractmethod
    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        """Route messages from *exchange* matching *routing_key* to *queue*."""

    @abstractmethod
    def unbind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        """Remove a binding established by :meth:`bind`."""

    @abstractmethod
    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        properties: Optional[Properties] = None,
    ) -> None:
        """Publish a message. Fire and forget, unless confirms are enabled,
        in which case a message the broker does not accept raises
        PublishNotConfirmed."""

    @abstractmethod
    def subscribe(
        self,
        queue: str,
        on_deliver: DeliveryCallback,
        auto_ack: bool = False,
        consumer_tag: Optional[str] = None,
    ) -> str:
        """Start consuming from *queue*; return the consumer tag."""

    @abstractmethod
    def cancel(self, consumer_tag: str) -> None:
        """Stop a subscription started by :meth:`subscribe`."""

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        """Acknowledge a delivery. Acknowledging twice is a no-op."""

    @abstractmethod
    def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        """Reject a delivery, optionally returning it to its queue."""

    @abstractmethod
    def qos(self, prefetch_count: int) -> None:
        """Limit unacknowledged deliveries per consumer; 0 is unlimited."""

    @abstractmethod
    def confirm_delivery(self) -> None:
        """Enable publisher confirms for subsequent publishes."""

    @abstractmethod
    def close(self) -> None:
        """Cancel subscriptions and release the channel/connection."""

    @property
    def is_open(self) -> bool:
        """Whether the bus is currently usable."""
        return False

    def _check_open(self) -> None:
        if not self.is_open:
            raise BusUnavailable("bus is closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = [
    "BusError",
    "DIRECT",
    "Delivery",
    "DeliveryCallback",
    "FANOUT",
    "KINDS",
    "MessageBus",
    "Properties",
    "TOPIC",
    "encode",
]
