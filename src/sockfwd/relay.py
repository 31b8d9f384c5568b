"""
Splices two conduits together. Bytes are copied in both directions on two threads until the
session is finished.

By default a session is finished when the first direction ends, whether by end of stream or by error.
Both conduits are then closed, which makes the copy still running in the other direction end
promptly. Data still in flight in that direction is dropped.

With full_duplex set, a clean end of stream in one direction is passed on as a half-close and the
relay waits for the other direction to end as well. Errors still close both sides at once.
"""
import logging
import threading
from enum import Enum
from queue import Queue, Empty

from sockfwd.conduit.base import Conduit
from sockfwd.connector.base import CopyError
from sockfwd.support.mixins import CommonEqualityMixin

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 32 * 1024

# how long to wait for the remaining copy thread after both conduits have been closed
CLOSE_GRACE = 5.0


class Direction(Enum):
    UPSTREAM = 'inbound->outbound'
    DOWNSTREAM = 'outbound->inbound'


class DirectionStatus(Enum):
    COMPLETED = 'completed'     # the source reached end of stream
    FAILED = 'failed'           # an I/O error in this direction
    CUT_SHORT = 'cut short'     # ended because the session was closed from the other direction


class DirectionOutcome(CommonEqualityMixin):
    """ The terminal state of one copy direction. Used for logging only. """
    def __init__(self, direction: Direction, transferred: int, status: DirectionStatus, error=None):
        self.direction = direction
        self.bytes = transferred
        self.status = status
        self.error = error

    def __str__(self):
        text = '%s: %d bytes %s' % (self.direction.value, self.bytes, self.status.value)
        if self.error is not None:
            text += ' (%s)' % self.error
        return text


class RelayOutcome:
    def __init__(self, upstream: DirectionOutcome, downstream: DirectionOutcome):
        self.upstream = upstream
        self.downstream = downstream

    @property
    def counts(self):
        """ (bytes inbound to outbound, bytes outbound to inbound) """
        return self.upstream.bytes, self.downstream.bytes

    def __str__(self):
        return '%s, %s' % (self.upstream, self.downstream)


class Relay:
    """
    Copies bytes between an inbound and an outbound conduit. The relay takes ownership of both
    conduits; they are closed when run() returns or raises.
    """

    def __init__(self, inbound: Conduit, outbound: Conduit, buffer_size=DEFAULT_BUFFER_SIZE,
                 full_duplex=False, name='relay', close_grace=CLOSE_GRACE):
        """
        :param inbound: the accepted connection
        :param outbound: the dialed connection
        :param buffer_size: size of the working buffer of each direction
        :param full_duplex: wait for both directions to end instead of finishing with the first
        :param name: prefix for the copy thread names
        """
        self.inbound = inbound
        self.outbound = outbound
        self.buffer_size = buffer_size
        self.full_duplex = full_duplex
        self.name = name
        self.close_grace = close_grace
        self._closing = threading.Event()
        self._transferred = {Direction.UPSTREAM: 0, Direction.DOWNSTREAM: 0}

    def run(self) -> RelayOutcome:
        """ Blocks until the session is finished. Both conduits are closed, even when this raises. """
        done = Queue()
        try:
            self._start(Direction.UPSTREAM, self.inbound, self.outbound, done)
            self._start(Direction.DOWNSTREAM, self.outbound, self.inbound, done)
        except Exception:
            self._close()
            raise

        first = done.get()
        if self.full_duplex and first.status is DirectionStatus.COMPLETED:
            second = done.get()
            self._close()
        else:
            self._close()
            second = self._collect(done, first.direction)

        outcomes = {first.direction: first, second.direction: second}
        return RelayOutcome(outcomes[Direction.UPSTREAM], outcomes[Direction.DOWNSTREAM])

    def _start(self, direction, source, sink, done):
        t = threading.Thread(target=self._pump, args=(direction, source, sink, done),
                             name='%s %s' % (self.name, direction.value))
        t.daemon = True
        t.start()
        return t

    def _collect(self, done, finished):
        """ waits for the direction that did not finish first. """
        try:
            return done.get(timeout=self.close_grace)
        except Empty:
            remaining = Direction.DOWNSTREAM if finished is Direction.UPSTREAM else Direction.UPSTREAM
            logger.warning("%s: %s did not stop after close" % (self.name, remaining.value))
            return DirectionOutcome(remaining, self._transferred[remaining], DirectionStatus.CUT_SHORT)

    def _close(self):
        self._closing.set()
        for conduit in (self.inbound, self.outbound):
            conduit.close()

    def _pump(self, direction, source: Conduit, sink: Conduit, done: Queue):
        buffer = bytearray(self.buffer_size)
        view = memoryview(buffer)
        error = None
        try:
            while True:
                n = source.recv_into(buffer)
                if not n:
                    break
                sink.sendall(view[:n])
                self._transferred[direction] += n
            if self.full_duplex:
                sink.shutdown_output()
        except OSError as e:
            error = CopyError(direction, '%s copy error: %s' % (direction.value, e))
        finally:
            done.put(self._outcome(direction, error))

    def _outcome(self, direction, error):
        if self._closing.is_set():
            status = DirectionStatus.CUT_SHORT
        elif error is not None:
            status = DirectionStatus.FAILED
        else:
            status = DirectionStatus.COMPLETED
        return DirectionOutcome(direction, self._transferred[direction], status, error)


def relay(inbound: Conduit, outbound: Conduit, buffer_size=DEFAULT_BUFFER_SIZE, full_duplex=False,
          name='relay') -> RelayOutcome:
    """
    Copies bytes between two conduits until the pairing is finished, then closes both.
    Copy errors are not raised; they are reported in the outcome.
    """
    return Relay(inbound, outbound, buffer_size, full_duplex, name).run()
