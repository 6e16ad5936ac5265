""" Broker connection parameters and the shared address space (topology)
    that a :class:`mqpatterns.rpc.Caller` and a
    :class:`mqpatterns.rpc.Responder` must agree on.
"""

from __future__ import annotations

import os
from typing import Optional

import pika

from . import tls


PLAIN_PORT = 5672
TLS_PORT = 5671

_PREFIX = 'MQPATTERNS_'


class BusConfig:
    """ Everything required to open a connection to an AMQP broker. TLS is
        enabled by setting *tls* to True, or implicitly by supplying a CA
        bundle; the default port follows the choice, 5671 for TLS and 5672
        otherwise.
    """

    heartbeat = 600
    blocked_connection_timeout = 300

    def __init__(self, host='localhost', port=None, virtual_host='/',
                 username='guest', password='guest', tls=None, ca=None,
                 cert=None, key=None, key_password=None,
                 verify_hostname=False):

        if tls is None:
            tls = ca is not None

        if port is None:
            if tls:
                port = TLS_PORT
            else:
                port = PLAIN_PORT

        self.host = host
        self.port = int(port)
        self.virtual_host = virtual_host
        self.username = username
        self.password = password
        self.tls = bool(tls)
        self.ca = ca
        self.cert = cert
        self.key = key
        self.key_password = key_password
        self.verify_hostname = verify_hostname


    def __repr__(self):
        scheme = 'amqps' if self.tls else 'amqp'
        return 'BusConfig(%s://%s@%s:%d%s)' % (scheme, self.username, self.host, self.port, self.virtual_host)


    @classmethod
    def from_environ(cls, environ=None, **overrides) -> 'BusConfig':
        """ Build a :class:`BusConfig` from MQPATTERNS_* environment
            variables. Keyword arguments that are not None take precedence
            over the environment.
        """

        if environ is None:
            environ = os.environ

        def lookup(name):
            return environ.get(_PREFIX + name)

        settings = dict()
        settings['host'] = lookup('AMQP_HOST') or 'localhost'
        settings['port'] = lookup('AMQP_PORT')
        settings['virtual_host'] = lookup('AMQP_VHOST') or '/'
        settings['username'] = lookup('AMQP_USER') or 'guest'
        settings['password'] = lookup('AMQP_PASSWORD') or 'guest'
        settings['ca'] = lookup('TLS_CA')
        settings['cert'] = lookup('TLS_CERT')
        settings['key'] = lookup('TLS_KEY')
        settings['key_password'] = lookup('TLS_PASSWORD')

        use_tls = lookup('TLS')
        if use_tls is not None:
            settings['tls'] = use_tls.lower() in ('1', 'true', 'yes', 'on')

        for name, value in overrides.items():
            if value is not None:
                settings[name] = value

        return cls(**settings)


    def ssl_options(self) -> Optional[pika.SSLOptions]:
        if self.tls == False:
            return None

        context = tls.context(self.ca, self.cert, self.key,
                              self.key_password, self.verify_hostname)
        return tls.options(context, self.host)


    def parameters(self) -> pika.ConnectionParameters:
        """ Return the :class:`pika.ConnectionParameters` matching this
            configuration.
        """

        credentials = pika.PlainCredentials(self.username, self.password)

        return pika.ConnectionParameters(
            host=self.host,
            port=self.port,
            virtual_host=self.virtual_host,
            credentials=credentials,
            ssl_options=self.ssl_options(),
            heartbeat=self.heartbeat,
            blocked_connection_timeout=self.blocked_connection_timeout,
        )


# end of class BusConfig



class Topology:
    """ The names a caller and responder share: the request *exchange* and
        its *kind* and *durable* flag, the well-known *request_queue* and
        the *request_key* it is bound under, and the *reply_key* callers
        bind their private reply queues to.

        Both sides must use the same exchange kind and durability; a broker
        rejects a redeclaration that disagrees.
    """

    def __init__(self, exchange='elex.rpc.exchange', kind='direct',
                 durable=True, request_queue='elex.rpc.queue',
                 request_key='elex-routing-key',
                 reply_key='client-routing-key'):

        self.exchange = exchange
        self.kind = kind
        self.durable = durable
        self.request_queue = request_queue
        self.request_key = request_key
        self.reply_key = reply_key


    def __repr__(self):
        return 'Topology(%s/%s -> %s, reply %s)' % (self.exchange, self.request_key, self.request_queue, self.reply_key)


# end of class Topology


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
