""" Command line drivers for the messaging patterns. Each subcommand wires
    up the relevant clients, runs a short demonstration, and shuts down;
    with --memory everything runs against an in-process bus and no broker
    is needed.
"""

import argparse
import logging
import sys
import threading
import time

from . import patterns
from . import rpc
from .bus.amqp import AmqpBus
from .bus.memory import MemoryBroker
from .config import BusConfig, Topology
from .errors import BusError, CallTimeout, PublishNotConfirmed


logger = logging.getLogger(__name__)

_FORMAT = '%(asctime)s [%(threadName)s] %(levelname)s %(name)s - %(message)s'


class Connector:
    """ Open a new bus for every client, the way each demo client would own
        its own connection to a broker.
    """

    def __init__(self, arguments):

        self.broker = None
        self.config = None

        if arguments.memory:
            self.broker = MemoryBroker()
        else:
            self.config = BusConfig.from_environ(
                host=arguments.host,
                port=arguments.port,
                virtual_host=arguments.vhost,
                username=arguments.user,
                password=arguments.password,
                tls=arguments.tls,
                ca=arguments.ca,
                cert=arguments.cert,
                key=arguments.key,
                key_password=arguments.key_password,
            )


    def __call__(self):
        if self.broker is not None:
            return self.broker.connect()

        return AmqpBus(self.config)


# end of class Connector



def topology(arguments):
    return Topology(
        exchange=arguments.exchange,
        request_queue=arguments.request_queue,
        request_key=arguments.request_key,
        reply_key=arguments.reply_key,
    )


def _printer(name):

    def show(delivery):
        body = delivery.body.decode('utf-8', errors='replace')
        print('[%s] %s : %s' % (name, delivery.routing_key, body), flush=True)

    return show


def _close(*clients):
    for client in clients:
        try:
            client.close()
        except BusError:
            logger.exception('closing %r failed', client)


def run_rpc_server(arguments, connect):

    responder = rpc.Responder(connect(), topology=topology(arguments))
    logger.info('serving requests on %s', responder.topology)

    try:
        threading.Event().wait(arguments.duration)
    finally:
        responder.close()

    return 0


def run_rpc_client(arguments, connect):

    responder = None
    if arguments.memory:
        responder = rpc.Responder(connect(), topology=topology(arguments))

    caller = rpc.Caller(connect(), topology(arguments))

    outstanding = [len(arguments.messages)]
    failures = [0]
    done = threading.Condition()

    def handler_for(message):

        def handler(reply):
            timed_out = isinstance(reply, CallTimeout)

            if timed_out:
                print('%s -> (timed out)' % (message), flush=True)
            else:
                print('%s -> %s' % (message, reply.decode('utf-8', errors='replace')), flush=True)

            with done:
                if timed_out:
                    failures[0] += 1
                outstanding[0] -= 1
                done.notify_all()

        return handler

    try:
        for message in arguments.messages:
            caller.call(message, handler_for(message), timeout=arguments.timeout)

        with done:
            done.wait_for(lambda: outstanding[0] == 0, arguments.timeout + caller.sweep * 2)
    finally:
        _close(caller)
        if responder is not None:
            _close(responder)

    if outstanding[0] or failures[0]:
        return 1

    return 0


def run_fanout(arguments, connect):

    producer = patterns.FanoutClient(connect(), 'Producer')
    consumer = patterns.FanoutClient(connect(), 'Consumer1')
    consumer.consume(_printer('Consumer1'))

    try:
        for number in range(arguments.count):
            producer.publish(str(number), 'Hello, %d' % (number))
            time.sleep(arguments.interval)

        time.sleep(arguments.wait)
    finally:
        _close(producer, consumer)

    return 0


def run_topic(arguments, connect):

    producer = patterns.TopicClient(connect(), 'Producer')
    apples = patterns.TopicClient(connect(), 'Consumer1')
    everything = patterns.TopicClient(connect(), 'Consumer2')

    apples.consume('message.apple.#', _printer('Consumer1'))
    everything.consume('message.#', _printer('Consumer2'))

    try:
        producer.publish('message.hello', 'Hello, there.')
        producer.publish('message.apple', 'Hello, apple.')
        producer.publish('message.banana', 'Hello, banana.')
        time.sleep(arguments.wait)
    finally:
        _close(producer, apples, everything)

    return 0


def run_workers(arguments, connect):

    producer = patterns.WorkQueue(connect(), 'Producer')
    consumers = list()

    for number in range(1, arguments.consumers + 1):
        name = 'Consumer%d' % (number)
        consumer = patterns.WorkQueue(connect(), name)

        def work(body, name=name):
            time.sleep(arguments.work)
            print('[%s] %s' % (name, body.decode('utf-8', errors='replace')), flush=True)

        consumer.consume(work)
        consumers.append(consumer)

    try:
        for number in range(arguments.count):
            producer.publish('Hello, %d' % (number))
            time.sleep(arguments.interval)

        time.sleep(arguments.wait)
    finally:
        _close(producer, *consumers)

    return 0


def run_durable(arguments, connect):

    producer = patterns.WorkQueue(connect(), 'Producer', confirm=True)
    consumer = patterns.WorkQueue(connect(), 'Consumer')

    def work(body):
        print('[Consumer] %s' % (body.decode('utf-8', errors='replace')), flush=True)

    consumer.consume(work)
    status = 0

    try:
        for message in arguments.messages:
            try:
                producer.publish(message)
            except PublishNotConfirmed as e:
                logger.error('publish failed: %s', e)
                status = 1

        time.sleep(arguments.wait)
    finally:
        _close(producer, consumer)

    return status


def parser():

    description = 'Demonstrate messaging patterns over RabbitMQ.'
    parser = argparse.ArgumentParser(prog='mqpatterns', description=description)

    parser.add_argument('-v', '--verbose', action='store_true', help='log at debug level')
    parser.add_argument('--memory', action='store_true', help='use an in-process bus instead of a broker')

    broker = parser.add_argument_group('broker')
    broker.add_argument('--host', help='broker host name (default: localhost)')
    broker.add_argument('--port', type=int, help='broker port (default: 5672, or 5671 with TLS)')
    broker.add_argument('--vhost', help='virtual host (default: /)')
    broker.add_argument('--user', help='user name (default: guest)')
    broker.add_argument('--password', help='password (default: guest)')
    broker.add_argument('--tls', action='store_const', const=True, default=None, help='connect with TLS')
    broker.add_argument('--ca', help='PEM bundle of trusted certificate authorities')
    broker.add_argument('--cert', help='PEM client certificate')
    broker.add_argument('--key', help='PEM client private key')
    broker.add_argument('--key-password', help='password for an encrypted client key')

    defaults = Topology()
    addresses = parser.add_argument_group('request/response topology')
    addresses.add_argument('--exchange', default=defaults.exchange)
    addresses.add_argument('--request-queue', default=defaults.request_queue)
    addresses.add_argument('--request-key', default=defaults.request_key)
    addresses.add_argument('--reply-key', default=defaults.reply_key)

    commands = parser.add_subparsers(dest='command', metavar='COMMAND')
    commands.required = True

    command = commands.add_parser('rpc-server', help='answer requests until interrupted')
    command.add_argument('--duration', type=float, default=None, help='stop after this many seconds')
    command.set_defaults(run=run_rpc_server)

    command = commands.add_parser('rpc-client', help='send requests and print the replies')
    command.add_argument('messages', nargs='+', metavar='MESSAGE')
    command.add_argument('--timeout', type=float, default=5.0, help='seconds to wait for each reply')
    command.set_defaults(run=run_rpc_client)

    command = commands.add_parser('fanout', help='broadcast to every bound queue')
    command.add_argument('--count', type=int, default=10)
    command.add_argument('--interval', type=float, default=0.1)
    command.add_argument('--wait', type=float, default=1.0)
    command.set_defaults(run=run_fanout)

    command = commands.add_parser('topic', help='route by routing key pattern')
    command.add_argument('--wait', type=float, default=1.0)
    command.set_defaults(run=run_topic)

    command = commands.add_parser('workers', help='share a queue between competing consumers')
    command.add_argument('--consumers', type=int, default=3)
    command.add_argument('--count', type=int, default=10)
    command.add_argument('--interval', type=float, default=0.1)
    command.add_argument('--work', type=float, default=1.0, help='seconds each message takes to process')
    command.add_argument('--wait', type=float, default=5.0)
    command.set_defaults(run=run_workers)

    command = commands.add_parser('durable', help='persistent publish with confirms')
    command.add_argument('messages', nargs='+', metavar='MESSAGE')
    command.add_argument('--wait', type=float, default=1.0)
    command.set_defaults(run=run_durable)

    return parser


def main(argv=None):

    arguments = parser().parse_args(argv)

    if arguments.verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=_FORMAT)

    try:
        connect = Connector(arguments)
        return arguments.run(arguments, connect)
    except BusError as e:
        logger.error('%s', e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == '__main__':
    sys.exit(main())


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
