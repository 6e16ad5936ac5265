""" Request/response calls layered on one-way messaging. A :class:`Caller`
    publishes requests tagged with a fresh correlation identifier and the
    routing key of its private reply queue; a :class:`Responder` consumes
    requests from a well-known queue and publishes each reply to the
    requested routing key, carrying the same correlation identifier. The
    caller matches replies to the waiting handlers through its
    :class:`mqpatterns.pending.PendingTable`.

    Replies may arrive in any order, more than once, or not at all.
    Duplicate and unknown replies are dropped; a lost reply leaves its
    handler pending until the caller closes, unless the call was made with
    a timeout.
"""

import logging
import threading
import time
import uuid

from . import poll
from .bus import base
from .config import Topology
from .errors import BusUnavailable, CallTimeout, ResponderTransformFailure
from .pending import PendingTable


logger = logging.getLogger(__name__)


def upper(payload):
    """ The sample transformation: the UTF-8 text of the request, uppercased.
        Malformed bytes decode as U+FFFD, so every request gets a reply.
    """

    return payload.decode('utf-8', errors='replace').upper().encode('utf-8')


def _connect(config):
    from .bus.amqp import AmqpBus
    return AmqpBus(config)


class PendingReply:
    """ Handler for a blocking call: records the reply, or the
        :class:`CallTimeout` delivered in its place, and wakes the waiting
        thread.
    """

    def __init__(self):
        self.response = None
        self.event = threading.Event()


    def __call__(self, response):
        self.response = response
        self.event.set()


    def wait(self, timeout=None):
        return self.event.wait(timeout)


    def result(self):
        if isinstance(self.response, CallTimeout):
            raise self.response
        return self.response


# end of class PendingReply



class Caller:
    """ Issue requests and dispatch their replies to per-call handlers. The
        caller owns the supplied *bus* and closes it in :func:`close`.

        On construction the request exchange from *topology* is declared,
        along with an exclusive reply queue with a bus-assigned name. The
        reply queue is bound under a routing key private to this caller,
        derived from the topology's reply key and the queue name, and
        consumed with manual acknowledgement.

        Expired calls are swept every *sweep* seconds, but only once a call
        has been made with a timeout.

        :ivar table: The :class:`PendingTable` of outstanding calls.
        :ivar reply_key: The routing key replies to this caller are sent to.
    """

    sweep = 0.5

    def __init__(self, bus, topology=None, sweep=None):

        if topology is None:
            topology = Topology()
        if sweep is not None:
            self.sweep = sweep

        self.bus = bus
        self.topology = topology
        self.table = PendingTable()
        self.closed = False
        self._poller = None
        self._poller_lock = threading.Lock()

        bus.declare_exchange(topology.exchange, topology.kind, topology.durable)
        self.queue = bus.declare_queue('', exclusive=True, auto_delete=True)
        self.reply_key = topology.reply_key + '.' + self.queue
        bus.bind(self.queue, topology.exchange, self.reply_key)
        self.consumer_tag = bus.subscribe(self.queue, self._on_reply, auto_ack=False)


    @classmethod
    def connect(cls, config=None, topology=None, **kwargs):
        """ Open a RabbitMQ connection described by *config* (a
            :class:`mqpatterns.config.BusConfig`, default: from the
            environment) and return a :class:`Caller` owning it.
        """

        return cls(_connect(config), topology, **kwargs)


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        self.close()


    @property
    def pending(self):
        """ The number of calls still waiting for a reply.
        """

        return len(self.table)


    def call(self, payload, handler, timeout=None):
        """ Publish *payload* as a request and return its correlation
            identifier immediately. *handler* is invoked exactly once with
            the reply body, on the bus's delivery thread, when the reply
            arrives. If *timeout* is given and no reply arrives within that
            many seconds, *handler* is instead invoked with a
            :class:`CallTimeout`. Without a timeout a lost reply means the
            handler is never invoked.
        """

        if self.closed:
            raise BusUnavailable('caller is closed')

        body = base.encode(payload)
        correlation_id = str(uuid.uuid4())

        deadline = None
        if timeout is not None:
            deadline = time.monotonic() + timeout

        self.table.register(correlation_id, handler, deadline)

        properties = base.Properties(
            reply_to=self.reply_key,
            correlation_id=correlation_id,
            content_type='text/plain',
            content_encoding='utf-8',
            persistent=True,
        )

        try:
            self.bus.publish(self.topology.exchange, self.topology.request_key, body, properties)
        except Exception:
            self.table.take(correlation_id)
            raise

        if deadline is not None:
            self._start_sweep()

        logger.info('Tx: %r (%s)', body, correlation_id)
        return correlation_id


    def request(self, payload, timeout=60):
        """ Blocking convenience wrapper around :func:`call`: return the
            reply body, or raise :class:`CallTimeout` if none arrives within
            *timeout* seconds.

            Do not invoke this from a delivery callback of the same bus; the
            reply cannot be delivered while that callback is running.
        """

        reply = PendingReply()
        correlation_id = self.call(payload, reply)

        if reply.wait(timeout):
            return reply.result()

        if self.table.take(correlation_id) is not None:
            raise CallTimeout(correlation_id)

        # The entry is gone: either the reply is being handled right now,
        # or the table was cleared by close().

        if reply.wait(self.sweep):
            return reply.result()

        raise CallTimeout(correlation_id)


    def close(self):
        """ Stop consuming replies, release the bus, and abandon every
            outstanding call; abandoned handlers are never invoked. An expiry
            sweep already under way runs to completion before this returns.
        """

        if self.closed:
            return

        self.closed = True

        with self._poller_lock:
            poller = self._poller
            self._poller = None

        if poller is not None:
            poller.stop()
            if poller.thread is not threading.current_thread():
                poller.thread.join()

        try:
            if self.bus.is_open:
                self.bus.cancel(self.consumer_tag)
        finally:
            self.bus.close()
            abandoned = self.table.clear()

        if abandoned:
            logger.info('abandoned %d pending call(s)', abandoned)


    def _on_reply(self, delivery):

        correlation_id = delivery.properties.correlation_id
        handler = None

        if correlation_id is not None:
            handler = self.table.take(correlation_id)

        if handler is None:
            logger.debug('dropped unmatched reply %r', correlation_id)
            return

        logger.info('Rx: %r (%s)', delivery.body, correlation_id)

        try:
            handler(delivery.body)
        except Exception:
            logger.exception('handler for %s failed', correlation_id)

        if self.bus.is_open:
            self.bus.ack(delivery)


    def _start_sweep(self):

        with self._poller_lock:
            if self._poller is None and self.closed == False:
                self._poller = poll.start(self._expire, self.sweep)


    def _expire(self):
        """ Invoked periodically once any call carries a deadline. Expiry is
            opt-in: a call issued without a timeout still waits forever.
        """

        for correlation_id, handler in self.table.expire():
            logger.warning('call %s timed out', correlation_id)

            try:
                handler(CallTimeout(correlation_id))
            except Exception:
                logger.exception('handler for %s failed on timeout', correlation_id)


# end of class Caller



class Responder:
    """ Serve requests from the well-known request queue of *topology*,
        replying with ``transform(payload)``. The responder owns the
        supplied *bus* and closes it in :func:`close`.

        Requests are consumed with automatic acknowledgement: a request whose
        transformation raises is logged and lost, never retried, and the
        responder carries on with the next one.

        :ivar handled: Count of requests answered.
        :ivar failed: Count of requests dropped.
    """

    def __init__(self, bus, transform=upper, topology=None):

        if topology is None:
            topology = Topology()

        self.bus = bus
        self.transform = transform
        self.topology = topology
        self.handled = 0
        self.failed = 0
        self.closed = False

        bus.declare_exchange(topology.exchange, topology.kind, topology.durable)
        bus.declare_queue(topology.request_queue)
        bus.bind(topology.request_queue, topology.exchange, topology.request_key)
        self.consumer_tag = bus.subscribe(topology.request_queue, self._on_request, auto_ack=True)


    @classmethod
    def connect(cls, config=None, transform=upper, topology=None):
        """ Open a RabbitMQ connection described by *config* and return a
            :class:`Responder` owning it.
        """

        return cls(_connect(config), transform, topology)


    def __enter__(self):
        return self


    def __exit__(self, *exc_info):
        self.close()


    def close(self):

        if self.closed:
            return

        self.closed = True

        try:
            if self.bus.is_open:
                self.bus.cancel(self.consumer_tag)
        finally:
            self.bus.close()


    def _on_request(self, delivery):

        properties = delivery.properties
        reply_to = properties.reply_to
        correlation_id = properties.correlation_id

        logger.info('Server Rx: %r (%s)', delivery.body, correlation_id)

        if not reply_to:
            self.failed += 1
            logger.warning('request %s has no reply address, dropped', correlation_id)
            return

        try:
            response = base.encode(self.transform(delivery.body))
        except Exception as e:
            self.failed += 1
            failure = ResponderTransformFailure(correlation_id, e)
            logger.error('%s', failure, exc_info=True)
            return

        reply = base.Properties(correlation_id=correlation_id)
        self.bus.publish(self.topology.exchange, reply_to, response, reply)
        self.handled += 1

        logger.info('Server Tx: %r (%s)', response, correlation_id)


# end of class Responder


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
