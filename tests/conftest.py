import pytest
import time

import mqpatterns


@pytest.fixture
def broker():
    return mqpatterns.MemoryBroker()


@pytest.fixture
def connect(broker):
    """ Return a function opening new buses on the shared in-memory broker;
        any bus still open at the end of the test is closed.
    """

    buses = list()

    def connect():
        bus = broker.connect()
        buses.append(bus)
        return bus

    yield connect

    for bus in buses:
        bus.close()


def _wait_for(condition, timeout=2):
    """ Poll *condition* until it returns True or *timeout* seconds pass.
        Returns the final result of *condition*.
    """

    expiration = time.monotonic() + timeout

    while time.monotonic() < expiration:
        if condition():
            return True
        time.sleep(0.005)

    return condition()


@pytest.fixture
def wait_for():
    return _wait_for


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
