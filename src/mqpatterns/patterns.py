""" Clients for the basic messaging patterns: fanout broadcast, topic
    routing, and a work queue shared by competing consumers. Each client
    owns its bus, as each owns a connection and channel on a real broker.
"""

import logging

from .bus import base


logger = logging.getLogger(__name__)


class _Client:

    def __init__(self, bus, name=None):
        self.bus = bus
        self.name = name
        self.consumer_tags = list()


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        self.close()


    def close(self):
        self.bus.close()


    def _subscribe(self, queue, callback, auto_ack, consumer_tag=None):
        tag = self.bus.subscribe(queue, callback, auto_ack=auto_ack, consumer_tag=consumer_tag)
        self.consumer_tags.append(tag)
        return tag


class FanoutClient(_Client):
    """ Every message published to a fanout exchange reaches every bound
        queue, whatever its routing key. Each client binds its own private
        queue, so every consuming client sees every message.
    """

    exchange = 'elex.fanout.exchange'

    def __init__(self, bus, name=None, exchange=None):

        _Client.__init__(self, bus, name)

        if exchange is not None:
            self.exchange = exchange

        bus.declare_exchange(self.exchange, base.FANOUT, durable=False)
        self.queue = bus.declare_queue('', exclusive=True)
        bus.bind(self.queue, self.exchange, '')


    def consume(self, callback, consumer_tag=None):
        """ Invoke *callback* with each :class:`Delivery` that arrives.
        """

        def on_deliver(delivery):
            logger.info('Rx: [%s] %r', delivery.consumer_tag, delivery.body)
            callback(delivery)

        return self._subscribe(self.queue, on_deliver, True, consumer_tag)


    def publish(self, routing_key, message):
        self.bus.publish(self.exchange, routing_key, base.encode(message))
        logger.info('Tx: [%s] %r', routing_key, message)


# end of class FanoutClient



class TopicClient(_Client):
    """ A topic exchange matches routing keys against binding patterns of
        dot-separated words, where ``*`` matches one word and ``#`` matches
        any number of words. Each call to :func:`consume` adds a pattern to
        this client's private queue.
    """

    exchange = 'elex.topic.exchange'

    def __init__(self, bus, name=None, exchange=None):

        _Client.__init__(self, bus, name)

        if exchange is not None:
            self.exchange = exchange

        self.patterns = list()
        self._callbacks = list()

        bus.declare_exchange(self.exchange, base.TOPIC, durable=False)
        self.queue = bus.declare_queue('', exclusive=True)


    def consume(self, pattern, callback):
        """ Receive messages whose routing key matches *pattern*. Every
            registered *callback* sees every message arriving on this
            client's queue, whichever pattern matched it.
        """

        self.bus.bind(self.queue, self.exchange, pattern)
        self.patterns.append(pattern)
        self._callbacks.append(callback)

        if not self.consumer_tags:
            self._subscribe(self.queue, self._on_deliver, True)


    def publish(self, topic, message):
        self.bus.publish(self.exchange, topic, base.encode(message))
        logger.info('Tx: [%s] %s : %r', self.name, topic, message)


    def _on_deliver(self, delivery):
        logger.info('Rx: [%s] %s : %r', self.name, delivery.routing_key, delivery.body)

        for callback in list(self._callbacks):
            callback(delivery)


# end of class TopicClient



class WorkQueue(_Client):
    """ A durable direct exchange feeding one shared queue. Every consumer
        of the queue competes for messages; with a prefetch of one, the
        broker hands a consumer its next message only after the previous
        one was acknowledged, spreading work across idle consumers.

        With *confirm* set, publishes are persistent and confirmed: a
        message the broker cannot route raises
        :class:`mqpatterns.errors.PublishNotConfirmed`.

        The shared queue is declared with the *durable* flag, non-durable by
        default; every client of one queue must agree on it.
    """

    exchange = 'elex.direct.exchange'
    queue = 'elex.queue'
    routing_key = 'elex-routing-key'

    def __init__(self, bus, name=None, prefetch=1, confirm=False,
                 exchange=None, queue=None, routing_key=None, durable=False):

        _Client.__init__(self, bus, name)

        if exchange is not None:
            self.exchange = exchange
        if queue is not None:
            self.queue = queue
        if routing_key is not None:
            self.routing_key = routing_key

        self.confirm = confirm
        self.durable = durable

        bus.declare_exchange(self.exchange, base.DIRECT, durable=True)
        bus.declare_queue(self.queue, durable=durable)
        bus.bind(self.queue, self.exchange, self.routing_key)

        if prefetch:
            bus.qos(prefetch)
        if confirm:
            bus.confirm_delivery()


    def consume(self, worker, consumer_tag=None):
        """ Invoke *worker* with the body of each message taken from the
            shared queue, acknowledging it once *worker* returns. A message
            whose *worker* raises is rejected without requeueing.
        """

        def on_deliver(delivery):
            logger.info('Rx: [%s] %r', self.name, delivery.body)

            try:
                worker(delivery.body)
            except Exception:
                logger.exception('[%s] worker failed on %r', self.name, delivery.body)
                self.bus.nack(delivery, requeue=False)
            else:
                self.bus.ack(delivery)

        return self._subscribe(self.queue, on_deliver, False, consumer_tag)


    def publish(self, message):
        properties = None
        if self.confirm:
            properties = base.Properties(content_type='text/plain', persistent=True)

        self.bus.publish(self.exchange, self.routing_key, base.encode(message), properties)
        logger.info('Tx: [%s] %r', self.name, message)


# end of class WorkQueue


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
