""" Background invocation of a method on a fixed period. The pending-call
    expiry sweep of a :class:`mqpatterns.rpc.Caller` runs on one of these.

    Only a weak reference to the method is held: if the object owning the
    method goes away, the poller quietly exits.
"""

import threading
import time
import weakref


active = dict()
_active_lock = threading.Lock()


def _reference(thing):
    """ Return a weak reference to the supplied argument, regardless of
        whether it is a simple function or a bound method. A plain
        weakref.ref() to a bound method dies immediately, since the bound
        method object itself is transient.
    """

    try:
        thing.__func__
        thing.__self__
    except AttributeError:
        return weakref.ref(thing)
    else:
        return weakref.WeakMethod(thing)


def _key(method):
    """ Bound method objects are created anew on each attribute access, so
        their id() is not stable; key them on their owner and function.
    """

    try:
        return (id(method.__self__), id(method.__func__))
    except AttributeError:
        return id(method)


def period(method):
    """ Return the currently set polling period for the provided *method*.
        Returns None if no polling is presently active for that method.
    """

    with _active_lock:
        poller = active.get(_key(method))

    if poller is None or poller.shutdown:
        return None

    return poller.interval


def start(method, period):
    """ Call the provided *method* every *period* seconds on a dedicated
        background thread, and return the :class:`Poller` doing so.

        If a poller is already active for the method it is updated to use
        the new period; a *period* of None or zero stops it.
    """

    if period is None or period == 0:
        stop(method)
        return None

    key = _key(method)

    with _active_lock:
        poller = active.get(key)
        if poller is None or poller.shutdown:
            poller = Poller(method, key)
            active[key] = poller

    poller.period(period)
    return poller


def stop(method):
    """ Discontinue calling the provided *method*.
    """

    with _active_lock:
        poller = active.get(_key(method))

    if poller is not None:
        poller.stop()


class Poller:
    """ Background thread invoking a single method. Use :func:`start` rather
        than instantiating this class directly.
    """

    def __init__(self, method, key):

        self.key = key
        self.interval = None
        self.reference = _reference(method)
        self.shutdown = False

        self.alarm = threading.Event()
        self.thread = threading.Thread(target=self.run, name='poller')
        self.thread.daemon = True
        self.thread.start()


    def period(self, period):
        """ Update the polling interval to *period* seconds.
        """

        period = float(period)
        if period <= 0:
            raise ValueError('polling period must be positive')

        self.interval = period
        self.wake()


    def run(self):

        try:
            self._loop()
        finally:
            with _active_lock:
                if active.get(self.key) is self:
                    del active[self.key]


    def _loop(self):

        interval = None
        next = time.monotonic()

        # Initial wait for someone to call self.period().

        while self.interval is None and self.shutdown == False:
            self.alarm.wait(1)

        while True:
            begin = time.monotonic()

            if self.shutdown == True:
                break

            if self.alarm.is_set() == True:
                self.alarm.clear()

                # The interval only changes when the alarm is set, including
                # upon startup; begin a new cadence from here.

                interval = self.interval
                next = begin + interval
            else:
                # Keep the requested cadence regardless of how long the call
                # took: the next wakeup follows the previous one.

                next += interval

            method = self.reference()

            if method is None:
                break

            method()
            del method

            delay = next - time.monotonic()
            if delay > 0:
                self.alarm.wait(delay)


    def stop(self):
        self.shutdown = True
        self.wake()


    def wake(self):
        self.alarm.set()


# end of class Poller


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
