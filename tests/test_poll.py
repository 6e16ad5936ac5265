import gc
import time

import mqpatterns


class Referenced:

    def __init__(self):
        self.calls = 0

    def a_method(self):
        self.calls += 1


def test_references():
    """ Only one poller may be active for a given method. Bound methods are
        created anew on every attribute access, so make sure the uniqueness
        constraint still holds for them.
    """

    def callback():
        pass

    mqpatterns.poll.start(callback, period=1)
    period = mqpatterns.poll.period(callback)
    assert period is not None
    assert period == 1

    referenced = Referenced()
    first = mqpatterns.poll.start(referenced.a_method, period=1)
    second = mqpatterns.poll.start(referenced.a_method, period=2)
    assert first is second
    assert mqpatterns.poll.period(referenced.a_method) == 2

    mqpatterns.poll.stop(callback)
    mqpatterns.poll.stop(referenced.a_method)


def test_basics():

    test_basics.polled = False

    def callback():
        test_basics.polled = True

    mqpatterns.poll.start(callback, 0.1)
    time.sleep(0.12)

    assert test_basics.polled == True


    mqpatterns.poll.stop(callback)
    test_basics.polled = False
    time.sleep(0.12)

    assert test_basics.polled == False


    mqpatterns.poll.start(callback, 0.1)
    time.sleep(0.12)

    assert test_basics.polled == True


    mqpatterns.poll.start(callback, period=None)
    test_basics.polled = False
    time.sleep(0.12)

    assert test_basics.polled == False

    # Redundant calls should be a no-op.

    mqpatterns.poll.start(callback, period=0)
    mqpatterns.poll.start(callback, period=None)
    mqpatterns.poll.stop(callback)

    assert mqpatterns.poll.period(callback) is None


def test_owner_goes_away():
    """ The poller only holds a weak reference; once the owner of a bound
        method is gone the poller exits on its own.
    """

    referenced = Referenced()
    poller = mqpatterns.poll.start(referenced.a_method, 0.01)
    time.sleep(0.05)
    assert referenced.calls > 0

    del referenced
    gc.collect()

    poller.thread.join(1)
    assert poller.thread.is_alive() == False
    assert poller.key not in mqpatterns.poll.active


def test_cadence():
    test_cadence.calls = list()

    def callback():
        test_cadence.calls.append(time.monotonic())

    frequency = 100
    period = 1.0 / frequency
    window = 0.2

    mqpatterns.poll.start(callback, period)
    time.sleep(window)
    mqpatterns.poll.stop(callback)

    calls = len(test_cadence.calls)
    expected_calls = window * frequency
    assert calls > expected_calls - 2
    assert calls <= expected_calls + 2


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
