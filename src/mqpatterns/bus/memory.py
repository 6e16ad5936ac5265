"""In-process message bus.

A :class:`MemoryBroker` holds exchanges, queues and bindings; each
:class:`MemoryBus` attached to it plays the part of one connection and
channel. Routing follows the AMQP direct, fanout and topic rules closely
enough to exercise client code without a running broker.
"""

from __future__ import annotations

import collections
import itertools
import logging
import threading
import uuid
from typing import Deque, Dict, List, Optional, Tuple

from ..errors import BusError, BusUnavailable, PublishNotConfirmed, TopologyMismatch
from .base import (
    DIRECT,
    FANOUT,
    KINDS,
    TOPIC,
    Delivery,
    DeliveryCallback,
    MessageBus,
    Properties,
    encode,
)


logger = logging.getLogger(__name__)

# Worker threads are joined for at most this long when a subscription is
# cancelled from another thread.
_JOIN_TIMEOUT = 5


def topic_matches(pattern: str, routing_key: str) -> bool:
    """Return True if *routing_key* matches the topic binding *pattern*.

    Both are dot-separated words; in the pattern ``*`` stands for exactly
    one word and ``#`` for zero or more words.
    """

    return _match(tuple(pattern.split(".")), tuple(routing_key.split(".")))


def _match(pattern: Tuple[str, ...], words: Tuple[str, ...]) -> bool:
    if not pattern:
        return not words

    head = pattern[0]
    rest = pattern[1:]

    if head == "#":
        for skip in range(len(words) + 1):
            if _match(rest, words[skip:]):
                return True
        return False

    if not words:
        return False

    if head == "*" or head == words[0]:
        return _match(rest, words[1:])

    return False


class _Message:

    def __init__(self, exchange: str, routing_key: str, properties: Properties, body: bytes):
        self.exchange = exchange
        self.routing_key = routing_key
        self.properties = properties
        self.body = body
        self.redelivered = False


class _Exchange:

    def __init__(self, name: str, kind: str, durable: bool):
        self.name = name
        self.kind = kind
        self.durable = durable
        self.bindings: List[Tuple[str, str]] = []

    def route(self, routing_key: str) -> List[str]:
        """Return the names of the queues a message is delivered to; a queue
        bound more than once still receives a single copy."""

        matched: List[str] = []
        for queue, key in self.bindings:
            if queue in matched:
                continue
            if self.kind == FANOUT:
                hit = True
            elif self.kind == TOPIC:
                hit = topic_matches(key, routing_key)
            else:
                hit = key == routing_key
            if hit:
                matched.append(queue)
        return matched


class _Queue:

    def __init__(self, name: str, durable: bool, exclusive: bool, auto_delete: bool, owner):
        self.name = name
        self.durable = durable
        self.exclusive = exclusive
        self.auto_delete = auto_delete
        self.owner = owner
        self.messages: Deque[_Message] = collections.deque()
        self.consumers: List[_Consumer] = []
        self.next_consumer = 0
        self.had_consumers = False


class _Consumer:
    """A subscription; deliveries are handed to a dedicated worker thread."""

    def __init__(self, bus: "MemoryBus", queue: _Queue, tag: str,
                 callback: DeliveryCallback, auto_ack: bool, prefetch: int):
        self.bus = bus
        self.queue = queue
        self.tag = tag
        self.callback = callback
        self.auto_ack = auto_ack
        self.prefetch = prefetch
        self.unacked: Dict[int, _Message] = {}
        self.active = True

        self._inbox: "collections.deque[Optional[Delivery]]" = collections.deque()
        self._wakeup = threading.Condition(threading.Lock())
        self.thread = threading.Thread(target=self.run, name=f"consumer-{tag}", daemon=True)
        self.thread.start()

    def has_capacity(self) -> bool:
        if self.auto_ack or self.prefetch == 0:
            return True
        return len(self.unacked) < self.prefetch

    def give(self, delivery: Optional[Delivery]) -> None:
        with self._wakeup:
            self._inbox.append(delivery)
            self._wakeup.notify()

    def run(self) -> None:
        while True:
            with self._wakeup:
                while not self._inbox:
                    self._wakeup.wait()
                delivery = self._inbox.popleft()

            if delivery is None:
                break
            if not self.active:
                continue

            try:
                self.callback(delivery)
            except Exception:
                logger.exception("consumer %s failed handling %r", self.tag, delivery)


class MemoryBroker:
    """Exchanges, queues and bindings shared by any number of buses."""

    def __init__(self):
        self.lock = threading.RLock()
        self.exchanges: Dict[str, _Exchange] = {}
        self.queues: Dict[str, _Queue] = {}

    def connect(self) -> "MemoryBus":
        """Return a new :class:`MemoryBus` attached to this broker."""
        return MemoryBus(self)

    # --- topology ---

    def _declare_exchange(self, name: str, kind: str, durable: bool) -> None:
        if kind not in KINDS:
            raise ValueError(f"unsupported exchange kind: {kind!r}")
        if name == "" or name.startswith("amq."):
            raise BusError(f"access refused: exchange name {name!r} is reserved")

        with self.lock:
            exchange = self.exchanges.get(name)
            if exchange is None:
                self.exchanges[name] = _Exchange(name, kind, durable)
                return

            if exchange.kind != kind or exchange.durable != durable:
                raise TopologyMismatch(
                    f"exchange {name!r} exists as {exchange.kind}"
                    f" (durable={exchange.durable}), redeclared as {kind}"
                    f" (durable={durable})"
                )

    def _declare_queue(self, owner: "MemoryBus", name: str, durable: bool,
                       exclusive: bool, auto_delete: bool) -> str:
        with self.lock:
            if name == "":
                name = "amq.gen-" + uuid.uuid4().hex
                while name in self.queues:
                    name = "amq.gen-" + uuid.uuid4().hex

            queue = self.queues.get(name)
            if queue is None:
                self.queues[name] = _Queue(name, durable, exclusive, auto_delete, owner)
                return name

            if queue.exclusive and queue.owner is not owner:
                raise BusError(f"resource locked: queue {name!r} is exclusive to another connection")

            if (queue.durable, queue.exclusive, queue.auto_delete) != (durable, exclusive, auto_delete):
                raise TopologyMismatch(f"queue {name!r} redeclared with different attributes")

            return name

    def _lookup(self, queue: str, exchange: str) -> Tuple[_Queue, _Exchange]:
        try:
            q = self.queues[queue]
        except KeyError:
            raise BusError(f"not found: no queue {queue!r}")
        try:
            e = self.exchanges[exchange]
        except KeyError:
            raise BusError(f"not found: no exchange {exchange!r}")
        return q, e

    def _bind(self, queue: str, exchange: str, routing_key: str) -> None:
        with self.lock:
            _q, e = self._lookup(queue, exchange)
            binding = (queue, routing_key)
            if binding not in e.bindings:
                e.bindings.append(binding)

    def _unbind(self, queue: str, exchange: str, routing_key: str) -> None:
        with self.lock:
            _q, e = self._lookup(queue, exchange)
            try:
                e.bindings.remove((queue, routing_key))
            except ValueError:
                pass

    def _delete_queue(self, queue: _Queue) -> None:
        self.queues.pop(queue.name, None)
        for exchange in self.exchanges.values():
            exchange.bindings = [b for b in exchange.bindings if b[0] != queue.name]

    # --- messages ---

    def _publish(self, exchange: str, routing_key: str, body: bytes, properties: Properties) -> int:
        with self.lock:
            if exchange == "":
                # The default exchange routes directly to the queue named
                # by the routing key.
                targets = [routing_key] if routing_key in self.queues else []
            else:
                try:
                    e = self.exchanges[exchange]
                except KeyError:
                    raise BusError(f"not found: no exchange {exchange!r}")
                targets = e.route(routing_key)

            for name in targets:
                queue = self.queues[name]
                queue.messages.append(_Message(exchange, routing_key, properties, body))
                self._dispatch(queue)

            return len(targets)

    def _dispatch(self, queue: _Queue) -> None:
        """Hand queued messages to consumers, round-robin, honoring each
        consumer's prefetch limit. Called with the lock held."""

        while queue.messages and queue.consumers:
            count = len(queue.consumers)
            chosen = None
            for offset in range(count):
                index = (queue.next_consumer + offset) % count
                candidate = queue.consumers[index]
                if candidate.has_capacity():
                    chosen = candidate
                    queue.next_consumer = (index + 1) % count
                    break

            if chosen is None:
                break

            message = queue.messages.popleft()
            chosen.bus._deliver(chosen, message)

    def _requeue(self, queue: _Queue, messages: List[_Message]) -> None:
        for message in reversed(messages):
            message.redelivered = True
            queue.messages.appendleft(message)
        if queue.name in self.queues:
            self._dispatch(queue)


class MemoryBus(MessageBus):
    """One channel on a :class:`MemoryBroker`."""

    def __init__(self, broker: Optional[MemoryBroker] = None):
        if broker is None:
            broker = MemoryBroker()

        self.broker = broker
        self._open = True
        self._prefetch = 0
        self._confirms = False
        self._tags = itertools.count(1)
        self._consumers: Dict[str, _Consumer] = {}
        self._unacked: Dict[int, _Consumer] = {}
        self._queues: List[_Queue] = []

    @property
    def is_open(self) -> bool:
        return self._open

    def declare_exchange(self, name: str, kind: str = DIRECT, durable: bool = False) -> None:
        self._check_open()
        self.broker._declare_exchange(name, kind, durable)

    def declare_queue(self, name: str = "", durable: bool = False,
                      exclusive: bool = False, auto_delete: bool = False) -> str:
        self._check_open()
        name = self.broker._declare_queue(self, name, durable, exclusive, auto_delete)
        with self.broker.lock:
            queue = self.broker.queues[name]
            if queue.owner is self and queue not in self._queues:
                self._queues.append(queue)
        return name

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._check_open()
        self.broker._bind(queue, exchange, routing_key)

    def unbind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._check_open()
        self.broker._unbind(queue, exchange, routing_key)

    def publish(self, exchange: str, routing_key: str, body: bytes,
                properties: Optional[Properties] = None) -> None:
        self._check_open()
        if properties is None:
            properties = Properties()

        routed = self.broker._publish(exchange, routing_key, encode(body), properties)

        if self._confirms and routed == 0:
            raise PublishNotConfirmed(
                f"message to {exchange!r} with key {routing_key!r} was not routable"
            )

    def subscribe(self, queue: str, on_deliver: DeliveryCallback,
                  auto_ack: bool = False, consumer_tag: Optional[str] = None) -> str:
        self._check_open()
        broker = self.broker

        with broker.lock:
            try:
                q = broker.queues[queue]
            except KeyError:
                raise BusError(f"not found: no queue {queue!r}")

            if q.exclusive and q.owner is not self:
                raise BusError(f"resource locked: queue {queue!r} is exclusive to another connection")

            if not consumer_tag:
                consumer_tag = "amq.ctag-" + uuid.uuid4().hex
            if consumer_tag in self._consumers:
                raise BusError(f"consumer tag {consumer_tag!r} already in use")

            consumer = _Consumer(self, q, consumer_tag, on_deliver, auto_ack, self._prefetch)
            self._consumers[consumer_tag] = consumer
            q.consumers.append(consumer)
            q.had_consumers = True
            broker._dispatch(q)

        return consumer_tag

    def cancel(self, consumer_tag: str) -> None:
        self._check_open()
        consumer = self._stop_consumer(consumer_tag)
        if consumer is not None:
            self._join(consumer)

    def ack(self, delivery: Delivery) -> None:
        self._check_open()
        with self.broker.lock:
            consumer = self._unacked.pop(delivery.tag, None)
            if consumer is None:
                return
            consumer.unacked.pop(delivery.tag, None)
            self.broker._dispatch(consumer.queue)

    def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        self._check_open()
        with self.broker.lock:
            consumer = self._unacked.pop(delivery.tag, None)
            if consumer is None:
                return
            message = consumer.unacked.pop(delivery.tag)
            if requeue:
                self.broker._requeue(consumer.queue, [message])
            else:
                self.broker._dispatch(consumer.queue)

    def qos(self, prefetch_count: int) -> None:
        self._check_open()
        if prefetch_count < 0:
            raise ValueError("prefetch_count must be zero or positive")
        self._prefetch = int(prefetch_count)

    def confirm_delivery(self) -> None:
        self._check_open()
        self._confirms = True

    def close(self) -> None:
        if not self._open:
            return

        stopped = []
        with self.broker.lock:
            self._open = False
            for tag in list(self._consumers):
                consumer = self._stop_consumer(tag)
                if consumer is not None:
                    stopped.append(consumer)

            for queue in self._queues:
                if queue.exclusive or (queue.auto_delete and queue.had_consumers and not queue.consumers):
                    self.broker._delete_queue(queue)
            self._queues = []

        for consumer in stopped:
            self._join(consumer)

    # --- internal ---

    def _deliver(self, consumer: _Consumer, message: _Message) -> None:
        """Called by the broker, lock held."""

        tag = next(self._tags)
        if not consumer.auto_ack:
            consumer.unacked[tag] = message
            self._unacked[tag] = consumer

        delivery = Delivery(
            exchange=message.exchange,
            routing_key=message.routing_key,
            properties=message.properties,
            body=message.body,
            tag=tag,
            consumer_tag=consumer.tag,
            redelivered=message.redelivered,
        )
        consumer.give(delivery)

    def _stop_consumer(self, consumer_tag: str) -> Optional[_Consumer]:
        broker = self.broker
        with broker.lock:
            consumer = self._consumers.pop(consumer_tag, None)
            if consumer is None:
                return None

            consumer.active = False
            queue = consumer.queue
            if consumer in queue.consumers:
                queue.consumers.remove(consumer)
                queue.next_consumer = 0

            pending = list(consumer.unacked.items())
            consumer.unacked.clear()
            for tag, _message in pending:
                self._unacked.pop(tag, None)

            if queue.auto_delete and not queue.consumers:
                broker._delete_queue(queue)
            else:
                broker._requeue(queue, [message for _tag, message in pending])

            consumer.give(None)

        return consumer

    def _join(self, consumer: _Consumer) -> None:
        if consumer.thread is not threading.current_thread():
            consumer.thread.join(_JOIN_TIMEOUT)
