""" Messaging patterns over a broker: request/response correlation on top
    of one-way messages, fanout broadcast, topic routing, competing
    consumers, and durable delivery, over RabbitMQ or an in-process bus.
"""

# Utility components.

from . import errors
from . import poll
from . import tls
from . import config

# The bus layer.

from . import bus
from .bus import MemoryBroker, MemoryBus, AmqpBus

# Primary public-facing interfaces.

from . import pending
from . import rpc
from . import patterns

from .config import BusConfig, Topology
from .rpc import Caller, Responder
from .patterns import FanoutClient, TopicClient, WorkQueue

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
