""" Exceptions raised (or passed along) by the mqpatterns components. Bus
    errors are fatal to whoever constructs a bus client; the remaining
    exceptions describe per-message conditions and are normally handled
    where they occur.
"""


class BusError(Exception):
    """Base class for all bus-layer errors."""


class BusUnavailable(BusError):
    """The bus could not establish or maintain a connection or channel."""


class TopologyMismatch(BusError):
    """An exchange or queue was redeclared with incompatible attributes."""


class PublishNotConfirmed(BusError):
    """A publish on a confirming channel was not accepted by the broker."""


class DuplicateCorrelationId(RuntimeError):
    """ A correlation identifier was registered twice with the same pending
        table. This should never happen with randomly generated identifiers;
        if it does, something upstream is reusing identifiers.
    """


class CallTimeout(Exception):
    """ No reply arrived before the deadline of a call. An instance is handed
        to the response handler in place of a payload when a deadline expires,
        and raised by :func:`mqpatterns.rpc.Caller.request`.

        :ivar correlation_id: The identifier of the abandoned call.
    """

    def __init__(self, correlation_id, message=None):
        if message is None:
            message = 'no reply received for ' + repr(correlation_id)

        Exception.__init__(self, message)
        self.correlation_id = correlation_id


class ResponderTransformFailure(Exception):
    """ The responder's transformation raised while handling a request.
        The request was already acknowledged and is not retried; this
        exception exists to describe the failure in the log.
    """

    def __init__(self, correlation_id, cause):
        message = 'transform failed for %s: %s' % (repr(correlation_id), cause)
        Exception.__init__(self, message)
        self.correlation_id = correlation_id
        self.cause = cause


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
