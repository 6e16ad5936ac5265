""" The pending request table: the association between a correlation
    identifier and the handler waiting for its reply. Entries are inserted
    on the publishing path and consulted-and-removed on the delivery path,
    which runs on a different thread; every operation is serialized by a
    single lock.
"""

import threading
import time

from .errors import DuplicateCorrelationId


class _Entry:

    __slots__ = ('handler', 'deadline')

    def __init__(self, handler, deadline):
        self.handler = handler
        self.deadline = deadline


class PendingTable:
    """ Mapping from correlation identifier to response handler. At most one
        entry exists per identifier; removal is idempotent.

        Deadlines, when used, are expressed in :func:`time.monotonic` seconds.
    """

    def __init__(self):
        self._entries = dict()
        self._lock = threading.Lock()


    def __contains__(self, id):
        with self._lock:
            return id in self._entries


    def __len__(self):
        with self._lock:
            return len(self._entries)


    def register(self, id, handler, deadline=None):
        """ Insert a new *handler* for the correlation identifier *id*.
            An optional *deadline* marks the entry for :func:`expire`.
            Raises :class:`DuplicateCorrelationId` if *id* is already
            present; the existing entry is left untouched.
        """

        entry = _Entry(handler, deadline)

        with self._lock:
            if id in self._entries:
                raise DuplicateCorrelationId('correlation id already pending: ' + repr(id))
            self._entries[id] = entry


    def take(self, id):
        """ Remove and return the handler for *id*, or None if there is no
            such entry: it was already taken, expired, cleared, or never
            belonged to this table.
        """

        with self._lock:
            entry = self._entries.pop(id, None)

        if entry is None:
            return None

        return entry.handler


    def clear(self):
        """ Discard every entry without notifying any handler. Returns the
            number of entries discarded.
        """

        with self._lock:
            count = len(self._entries)
            self._entries.clear()

        return count


    def expire(self, now=None):
        """ Remove every entry whose deadline is at or before *now* (default:
            the current monotonic time) and return them as a list of
            (id, handler) pairs, earliest deadline first. Invoking the
            handlers is left to the caller, outside the lock.
        """

        if now is None:
            now = time.monotonic()

        expired = list()

        with self._lock:
            for id, entry in self._entries.items():
                if entry.deadline is not None and entry.deadline <= now:
                    expired.append((entry.deadline, id, entry.handler))

            for _deadline, id, _handler in expired:
                del self._entries[id]

        expired.sort(key=lambda item: item[0])
        return [(id, handler) for _deadline, id, handler in expired]


# end of class PendingTable


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
