import threading
import time
import pytest

import mqpatterns
from mqpatterns.bus import Properties
from mqpatterns.errors import BusError, CallTimeout, DuplicateCorrelationId


def request_queue(bus, topology):
    """ Declare and bind the request queue, as a responder that ran earlier
        would have left it.
    """

    bus.declare_exchange(topology.exchange, topology.kind, topology.durable)
    bus.declare_queue(topology.request_queue)
    bus.bind(topology.request_queue, topology.exchange, topology.request_key)


class Replies:
    """ Response handler factory recording which handler saw which reply.
    """

    def __init__(self):
        self.received = list()
        self.lock = threading.Lock()

    def handler(self, name):
        def handler(reply):
            with self.lock:
                self.received.append((name, reply))
        return handler

    def __len__(self):
        with self.lock:
            return len(self.received)


def test_round_trip(connect, wait_for):

    responder = mqpatterns.Responder(connect())
    caller = mqpatterns.Caller(connect())
    replies = Replies()

    caller.call('hello', replies.handler('hello'))

    assert wait_for(lambda: len(replies) == 1)
    time.sleep(0.05)

    assert replies.received == [('hello', b'HELLO')]
    assert caller.pending == 0
    assert responder.handled == 1

    caller.close()
    responder.close()


def test_two_calls(connect, wait_for):

    responder = mqpatterns.Responder(connect())
    caller = mqpatterns.Caller(connect())
    replies = Replies()

    caller.call(b'a', replies.handler('a'))
    caller.call(b'b', replies.handler('b'))

    assert wait_for(lambda: len(replies) == 2)
    assert sorted(replies.received) == [('a', b'A'), ('b', b'B')]

    caller.close()
    responder.close()


def test_out_of_order_replies(connect, wait_for):
    """ Capture the requests instead of answering them, then reply in the
        reverse order; each handler still sees its own reply.
    """

    topology = mqpatterns.Topology()
    server = connect()
    request_queue(server, topology)

    requests = list()
    server.subscribe(topology.request_queue, requests.append, auto_ack=True)

    caller = mqpatterns.Caller(connect(), topology)
    replies = Replies()

    payloads = [b'a', b'b', b'c', b'd']
    for payload in payloads:
        caller.call(payload, replies.handler(payload))

    assert wait_for(lambda: len(requests) == len(payloads))
    assert caller.pending == len(payloads)

    for request in reversed(requests):
        assert request.properties.reply_to == caller.reply_key
        assert request.properties.persistent == True
        reply = Properties(correlation_id=request.properties.correlation_id)
        server.publish(topology.exchange, request.properties.reply_to, request.body.upper(), reply)

    assert wait_for(lambda: len(replies) == len(payloads))

    for name, reply in replies.received:
        assert reply == name.upper()

    arrival = [name for name, reply in replies.received]
    assert arrival == list(reversed(payloads))
    assert caller.pending == 0

    caller.close()


def test_duplicate_and_unknown_replies(connect, wait_for):

    topology = mqpatterns.Topology()
    server = connect()
    request_queue(server, topology)

    requests = list()
    server.subscribe(topology.request_queue, requests.append, auto_ack=True)

    caller = mqpatterns.Caller(connect(), topology)
    replies = Replies()
    caller.call(b'once', replies.handler('once'))
    caller.call(b'never', replies.handler('never'))

    assert wait_for(lambda: len(requests) == 2)
    request = requests[0]
    reply = Properties(correlation_id=request.properties.correlation_id)

    # A stranger's reply, and a reply with no correlation id at all.
    stranger = Properties(correlation_id='not-one-of-ours')
    server.publish(topology.exchange, caller.reply_key, b'STRANGER', stranger)
    server.publish(topology.exchange, caller.reply_key, b'ANONYMOUS')

    server.publish(topology.exchange, caller.reply_key, b'ONCE', reply)
    server.publish(topology.exchange, caller.reply_key, b'ONCE AGAIN', reply)

    assert wait_for(lambda: len(replies) == 1)
    time.sleep(0.1)

    assert replies.received == [('once', b'ONCE')]
    assert caller.pending == 1

    caller.close()


def test_clear_pending(connect, wait_for):
    """ Once the table is cleared, the reply to the abandoned request finds
        nothing to invoke.
    """

    topology = mqpatterns.Topology()
    server = connect()
    request_queue(server, topology)

    requests = list()
    server.subscribe(topology.request_queue, requests.append, auto_ack=True)

    caller = mqpatterns.Caller(connect(), topology)
    replies = Replies()

    caller.call(b'lonely', replies.handler('lonely'))
    assert wait_for(lambda: len(requests) == 1)
    assert caller.pending == 1

    caller.table.clear()
    assert caller.pending == 0
    assert len(caller.table) == 0

    request = requests[0]
    reply = Properties(correlation_id=request.properties.correlation_id)
    server.publish(topology.exchange, request.properties.reply_to, b'LONELY', reply)

    time.sleep(0.1)
    assert len(replies) == 0
    assert caller.pending == 0

    caller.close()


def test_close_abandons_calls(connect):

    caller = mqpatterns.Caller(connect())
    replies = Replies()

    caller.call(b'abandoned', replies.handler('abandoned'))
    caller.close()
    caller.close()

    assert caller.pending == 0
    assert caller.bus.is_open == False
    assert len(replies) == 0

    with pytest.raises(BusError):
        caller.call(b'too late', replies.handler('too late'))


def test_late_reply_after_close(connect, wait_for):
    """ A responder answering after the caller is gone must not fail.
    """

    topology = mqpatterns.Topology()
    request_queue(connect(), topology)
    caller = mqpatterns.Caller(connect(), topology)
    replies = Replies()
    caller.call(b'late', replies.handler('late'))
    caller.close()

    responder = mqpatterns.Responder(connect(), topology=topology)
    assert wait_for(lambda: responder.handled == 1)
    assert len(replies) == 0

    responder.close()


def test_timeout(connect, wait_for):

    caller = mqpatterns.Caller(connect(), sweep=0.01)
    replies = Replies()

    correlation_id = caller.call(b'ignored', replies.handler('ignored'), timeout=0.05)
    caller.call(b'patient', replies.handler('patient'))

    assert wait_for(lambda: len(replies) == 1)

    name, reply = replies.received[0]
    assert name == 'ignored'
    assert isinstance(reply, CallTimeout)
    assert reply.correlation_id == correlation_id

    # The call without a deadline waits forever.
    assert caller.pending == 1

    caller.close()


def test_timeout_then_reply(connect, wait_for):
    """ A reply arriving after its call expired finds nothing to invoke.
    """

    topology = mqpatterns.Topology()
    request_queue(connect(), topology)
    caller = mqpatterns.Caller(connect(), topology, sweep=0.01)
    replies = Replies()

    caller.call(b'slow', replies.handler('slow'), timeout=0.02)
    assert wait_for(lambda: len(replies) == 1)

    responder = mqpatterns.Responder(connect(), topology=topology)
    assert wait_for(lambda: responder.handled == 1)
    time.sleep(0.05)

    assert len(replies) == 1
    assert isinstance(replies.received[0][1], CallTimeout)

    caller.close()
    responder.close()


def test_request(connect):

    responder = mqpatterns.Responder(connect())
    caller = mqpatterns.Caller(connect())

    assert caller.request('blocking', timeout=2) == b'BLOCKING'
    assert caller.pending == 0

    responder.close()

    with pytest.raises(CallTimeout):
        caller.request('nobody home', timeout=0.05)

    assert caller.pending == 0
    caller.close()


def test_transform_failure(connect, wait_for):
    """ A failing transformation loses that request; the responder keeps
        serving the next one.
    """

    def picky(payload):
        if payload == b'bad':
            raise ValueError('refusing to transform')
        return payload[::-1]

    responder = mqpatterns.Responder(connect(), transform=picky)
    caller = mqpatterns.Caller(connect())
    replies = Replies()

    caller.call(b'bad', replies.handler('bad'))
    caller.call(b'good', replies.handler('good'))

    assert wait_for(lambda: len(replies) == 1)
    time.sleep(0.05)

    assert replies.received == [('good', b'doog')]
    assert responder.failed == 1
    assert responder.handled == 1
    assert caller.pending == 1

    caller.close()
    responder.close()


def test_failing_handler(connect, wait_for):

    responder = mqpatterns.Responder(connect())
    caller = mqpatterns.Caller(connect())
    replies = Replies()

    def explode(reply):
        raise RuntimeError('handler bug')

    caller.call(b'first', explode)
    caller.call(b'second', replies.handler('second'))

    assert wait_for(lambda: len(replies) == 1)
    assert replies.received == [('second', b'SECOND')]
    assert caller.pending == 0

    caller.close()
    responder.close()


def test_publish_failure(connect):

    class Broken(mqpatterns.MemoryBus):
        def publish(self, *args, **kwargs):
            raise BusError('publish refused')

    bus = Broken(connect().broker)
    caller = mqpatterns.Caller(bus)

    with pytest.raises(BusError):
        caller.call(b'nowhere', Replies().handler('nowhere'))

    assert caller.pending == 0
    caller.close()


def test_duplicate_registration(connect, monkeypatch):

    caller = mqpatterns.Caller(connect())

    class Fixed:
        def __str__(self):
            return 'always-the-same'

    monkeypatch.setattr(mqpatterns.rpc.uuid, 'uuid4', Fixed)

    caller.call(b'one', Replies().handler('one'))
    with pytest.raises(DuplicateCorrelationId):
        caller.call(b'two', Replies().handler('two'))

    assert caller.pending == 1
    caller.close()


def test_private_reply_routing(connect, wait_for):
    """ Two callers share the exchange; each only hears its own replies.
    """

    responder = mqpatterns.Responder(connect())
    first = mqpatterns.Caller(connect())
    second = mqpatterns.Caller(connect())
    assert first.reply_key != second.reply_key

    replies = Replies()
    first.call(b'one', replies.handler('first'))
    second.call(b'two', replies.handler('second'))

    assert wait_for(lambda: len(replies) == 2)
    assert sorted(replies.received) == [('first', b'ONE'), ('second', b'TWO')]

    first.close()
    second.close()
    responder.close()


def test_topology_mismatch(connect):

    topology = mqpatterns.Topology(kind='fanout')
    mqpatterns.Responder(connect())

    with pytest.raises(mqpatterns.errors.TopologyMismatch):
        mqpatterns.Caller(connect(), topology)


def test_malformed_utf8(connect, wait_for):
    """ The default transformation answers even a request that is not
        valid UTF-8.
    """

    responder = mqpatterns.Responder(connect())
    caller = mqpatterns.Caller(connect())
    replies = Replies()

    caller.call(b'abc\xff', replies.handler('abc'))

    assert wait_for(lambda: len(replies) == 1)
    assert replies.received == [('abc', 'ABC\ufffd'.encode('utf-8'))]
    assert responder.failed == 0
    assert responder.handled == 1

    caller.close()
    responder.close()


def test_close_waits_for_sweep(connect, wait_for):
    """ Expired handlers already being invoked finish before close()
        returns; nothing is invoked afterwards.
    """

    caller = mqpatterns.Caller(connect(), sweep=0.01)
    started = threading.Event()
    invoked = list()
    lock = threading.Lock()

    def slow(reply):
        started.set()
        time.sleep(0.05)
        with lock:
            invoked.append(reply)

    caller.call(b'first', slow, timeout=0.01)
    caller.call(b'second', slow, timeout=0.01)

    assert started.wait(2)
    caller.close()

    with lock:
        at_close = len(invoked)

    time.sleep(0.15)

    with lock:
        assert len(invoked) == at_close

    assert at_close >= 1
    assert all(isinstance(reply, CallTimeout) for reply in invoked)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
