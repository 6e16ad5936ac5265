"""Message bus implementations."""

from .base import (
    DIRECT,
    FANOUT,
    TOPIC,
    Delivery,
    MessageBus,
    Properties,
)
from .memory import MemoryBroker, MemoryBus, topic_matches
from .amqp import AmqpBus
