"""RabbitMQ message bus backed by pika."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Callable, Optional, Set

import pika
import pika.exceptions

from ..config import BusConfig
from ..errors import BusError, BusUnavailable, PublishNotConfirmed, TopologyMismatch
from .base import DIRECT, Delivery, DeliveryCallback, MessageBus, Properties, encode


logger = logging.getLogger(__name__)

# AMQP reply code for a redeclaration with mismatched attributes.
_PRECONDITION_FAILED = 406


def _to_pika(properties: Optional[Properties]) -> pika.BasicProperties:
    if properties is None:
        return pika.BasicProperties()

    delivery_mode = None
    if properties.persistent:
        delivery_mode = pika.spec.PERSISTENT_DELIVERY_MODE

    return pika.BasicProperties(
        reply_to=properties.reply_to,
        correlation_id=properties.correlation_id,
        content_type=properties.content_type,
        content_encoding=properties.content_encoding,
        delivery_mode=delivery_mode,
    )


def _from_pika(properties: pika.BasicProperties) -> Properties:
    return Properties(
        reply_to=properties.reply_to,
        correlation_id=properties.correlation_id,
        content_type=properties.content_type,
        content_encoding=properties.content_encoding,
        persistent=properties.delivery_mode == pika.spec.PERSISTENT_DELIVERY_MODE,
    )


class AmqpBus(MessageBus):
    """A single connection and channel to a RabbitMQ broker.

    The pika connection is not thread safe; it lives on a dedicated
    connection thread, and every channel operation is marshalled onto that
    thread via add_callback_threadsafe(). Delivery callbacks run on the
    connection thread as well, so they must not block waiting on another
    operation of the same bus.
    """

    connect_timeout = 10
    call_timeout = 30

    def __init__(self, config: Optional[BusConfig] = None, connect_timeout: Optional[float] = None):
        if config is None:
            config = BusConfig.from_environ()
        if connect_timeout is not None:
            self.connect_timeout = connect_timeout

        self.config = config
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None
        self._failure: Optional[BaseException] = None
        self._closing = False
        self._confirms = False
        self._prefetch = 0
        self._outstanding: Set[int] = set()
        self._consumer_tags: Set[str] = set()
        self._ready = threading.Event()

        self._thread = threading.Thread(target=self._run, name=f"amqp-{config.host}", daemon=True)
        self._thread.start()

        if not self._ready.wait(self.connect_timeout):
            self._closing = True
            raise BusUnavailable(f"no connection to {config!r} in {self.connect_timeout:.1f} sec")

        if self._failure is not None:
            raise BusUnavailable(f"cannot connect to {config!r}: {self._failure}") from self._failure

    @property
    def is_open(self) -> bool:
        return (
            self._connection is not None
            and self._failure is None
            and not self._closing
            and self._thread.is_alive()
        )

    # --- connection thread ---

    def _run(self) -> None:
        try:
            self._connection = pika.BlockingConnection(self.config.parameters())
            self._channel = self._connection.channel()
        except Exception as e:
            self._failure = e
            self._ready.set()
            return

        logger.debug("connected to %r", self.config)
        self._ready.set()

        try:
            while not self._closing:
                self._connection.process_data_events(time_limit=1)
        except pika.exceptions.AMQPError as e:
            self._failure = e
            logger.error("connection to %r lost: %s", self.config, e)
            return

        try:
            self._connection.close()
        except pika.exceptions.AMQPError:
            pass

    def _invoke(self, function: Callable, *args, **kwargs):
        """Run *function* on the connection thread and return its result."""

        if threading.current_thread() is self._thread:
            return self._translate(function, *args, **kwargs)

        self._check_open()
        future: concurrent.futures.Future = concurrent.futures.Future()

        def call():
            try:
                result = self._translate(function, *args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        try:
            self._connection.add_callback_threadsafe(call)
        except pika.exceptions.AMQPError as e:
            raise BusUnavailable(str(e)) from e

        try:
            return future.result(self.call_timeout)
        except concurrent.futures.TimeoutError:
            raise BusUnavailable(f"no answer from {self.config!r} in {self.call_timeout:.1f} sec")

    def _translate(self, function: Callable, *args, **kwargs):
        """Call *function*, mapping pika exceptions onto bus exceptions."""

        try:
            return function(*args, **kwargs)
        except pika.exceptions.ChannelClosedByBroker as e:
            # The broker closes the channel on any channel-level error; open
            # a fresh one so the bus remains usable.
            self._reopen()
            if e.reply_code == _PRECONDITION_FAILED:
                raise TopologyMismatch(e.reply_text) from e
            raise BusError(f"{e.reply_code}: {e.reply_text}") from e
        except (pika.exceptions.UnroutableError, pika.exceptions.NackError) as e:
            raise PublishNotConfirmed(str(e)) from e
        except pika.exceptions.AMQPConnectionError as e:
            raise BusUnavailable(str(e)) from e
        except pika.exceptions.AMQPError as e:
            raise BusError(str(e)) from e

    def _reopen(self) -> None:
        lost = sorted(self._consumer_tags)
        if lost:
            logger.warning(
                "channel to %r closed by broker; consumers not restored: %s",
                self.config, ", ".join(lost),
            )
        self._consumer_tags.clear()
        self._outstanding.clear()
        self._channel = self._connection.channel()
        if self._prefetch:
            self._channel.basic_qos(prefetch_count=self._prefetch)
        if self._confirms:
            self._channel.confirm_delivery()

    # --- MessageBus ---

    def declare_exchange(self, name: str, kind: str = DIRECT, durable: bool = False) -> None:
        self._invoke(
            lambda: self._channel.exchange_declare(exchange=name, exchange_type=kind, durable=durable)
        )

    def declare_queue(self, name: str = "", durable: bool = False,
                      exclusive: bool = False, auto_delete: bool = False) -> str:
        result = self._invoke(
            lambda: self._channel.queue_declare(
                queue=name, durable=durable, exclusive=exclusive, auto_delete=auto_delete
            )
        )
        return result.method.queue

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._invoke(
            lambda: self._channel.queue_bind(queue=queue, exchange=exchange, routing_key=routing_key)
        )

    def unbind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._invoke(
            lambda: self._channel.queue_unbind(queue=queue, exchange=exchange, routing_key=routing_key)
        )

    def publish(self, exchange: str, routing_key: str, body: bytes,
                properties: Optional[Properties] = None) -> None:
        body = encode(body)
        pika_properties = _to_pika(properties)

        def send():
            self._channel.basic_publish(
                exchange=exchange,
                routing_key=routing_key,
                body=body,
                properties=pika_properties,
                mandatory=self._confirms,
            )

        self._invoke(send)

    def subscribe(self, queue: str, on_deliver: DeliveryCallback,
                  auto_ack: bool = False, consumer_tag: Optional[str] = None) -> str:

        def on_message(_channel, method, properties, body: bytes) -> None:
            if not auto_ack:
                self._outstanding.add(method.delivery_tag)

            delivery = Delivery(
                exchange=method.exchange,
                routing_key=method.routing_key,
                properties=_from_pika(properties),
                body=body,
                tag=method.delivery_tag,
                consumer_tag=method.consumer_tag,
                redelivered=method.redelivered,
            )

            try:
                on_deliver(delivery)
            except Exception:
                logger.exception("consumer %s failed handling %r", method.consumer_tag, delivery)

        tag = self._invoke(
            lambda: self._channel.basic_consume(
                queue=queue,
                on_message_callback=on_message,
                auto_ack=auto_ack,
                consumer_tag=consumer_tag,
            )
        )
        self._consumer_tags.add(tag)
        return tag

    def cancel(self, consumer_tag: str) -> None:
        self._invoke(lambda: self._channel.basic_cancel(consumer_tag))
        self._consumer_tags.discard(consumer_tag)

    def ack(self, delivery: Delivery) -> None:

        def send():
            if delivery.tag not in self._outstanding:
                return
            self._outstanding.discard(delivery.tag)
            self._channel.basic_ack(delivery_tag=delivery.tag)

        self._invoke(send)

    def nack(self, delivery: Delivery, requeue: bool = True) -> None:

        def send():
            if delivery.tag not in self._outstanding:
                return
            self._outstanding.discard(delivery.tag)
            self._channel.basic_nack(delivery_tag=delivery.tag, requeue=requeue)

        self._invoke(send)

    def qos(self, prefetch_count: int) -> None:
        self._invoke(lambda: self._channel.basic_qos(prefetch_count=prefetch_count))
        self._prefetch = prefetch_count

    def confirm_delivery(self) -> None:
        if self._confirms:
            return
        self._invoke(self._channel.confirm_delivery)
        self._confirms = True

    def close(self) -> None:
        if self._closing or self._connection is None:
            self._closing = True
            return

        self._closing = True

        if threading.current_thread() is self._thread:
            # The run loop closes the connection once this callback returns.
            return

        try:
            # Wake the connection thread so it notices promptly.
            self._connection.add_callback_threadsafe(lambda: None)
        except pika.exceptions.AMQPError:
            pass

        self._thread.join(self.call_timeout)
