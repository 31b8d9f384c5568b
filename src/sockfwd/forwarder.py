import itertools
import logging
import threading
from collections import namedtuple
from enum import Enum

from sockfwd.conduit.base import Conduit
from sockfwd.connector.base import AcceptError, ConfigError, DialError, Transport
from sockfwd.connector.listener import Acceptor, listen
from sockfwd.connector.socketconn import DIAL_TIMEOUT, TargetConnector
from sockfwd.events import AcceptFailedEvent, ConnectionAcceptedEvent, DialFailedEvent, ForwarderStartedEvent, \
    ListeningEvent, SessionClosedEvent, ShutdownEvent, TargetConnectedEvent
from sockfwd.relay import DEFAULT_BUFFER_SIZE, Relay
from sockfwd.support.events import EventSource

logger = logging.getLogger(__name__)

LISTEN_TRANSPORTS = (Transport.TCP, Transport.UNIX)

_ForwardConfig = namedtuple('ForwardConfig', [
    'listen_type', 'listen_addr', 'connect_type', 'connect_addr', 'fork',
    'dial_timeout', 'buffer_size', 'full_duplex_drain', 'drain_on_shutdown'])


class ForwardConfig(_ForwardConfig):
    """
    Immutable forwarder configuration.
    :param listen_type: the transport to accept connections on, tcp or unix
    :param listen_addr: host:port or a socket file path
    :param connect_type: the transport of the target, tcp, unix or abstract. Not checked until dialed.
    :param connect_addr: host:port, socket file path, or abstract name
    :param fork: run each session on its own thread (True) or one session at a time (False)
    :param dial_timeout: seconds allowed to establish the target connection
    :param buffer_size: working buffer size for each copy direction
    :param full_duplex_drain: wait for both directions to finish rather than ending with the first
    :param drain_on_shutdown: wait for the sessions in flight when the forwarder stops
    """
    __slots__ = ()

    def __new__(cls, listen_type='tcp', listen_addr='', connect_type='unix', connect_addr='', fork=True,
                dial_timeout=DIAL_TIMEOUT, buffer_size=DEFAULT_BUFFER_SIZE, full_duplex_drain=False,
                drain_on_shutdown=False):
        return super().__new__(cls, listen_type, listen_addr, connect_type, connect_addr, fork,
                               dial_timeout, buffer_size, full_duplex_drain, drain_on_shutdown)

    def validate(self):
        """
        :return: this configuration
        :raises ConfigError: the configuration cannot be used
        """
        if not self.listen_addr:
            raise ConfigError("listen address is required")
        if not self.connect_addr:
            raise ConfigError("connect address is required")
        if Transport.parse(self.listen_type) not in LISTEN_TRANSPORTS:
            raise ConfigError("unsupported listen type: %s" % self.listen_type)
        if self.dial_timeout is None or self.dial_timeout <= 0:
            raise ConfigError("dial timeout must be positive: %s" % self.dial_timeout)
        if self.buffer_size is None or self.buffer_size <= 0:
            raise ConfigError("buffer size must be positive: %s" % self.buffer_size)
        return self


class ForwarderState(Enum):
    STARTING = 'starting'
    LISTENING = 'listening'
    ACCEPTING = 'accepting'
    DISPATCHING = 'dispatching'
    DRAINING = 'draining'
    STOPPED = 'stopped'


class Forwarder:
    """
    The accept loop. Each accepted connection is paired with a freshly dialed target connection
    and the two are relayed, either on a new session thread (fork) or inline.

    Shutdown is requested through the stop event given at construction (or via stop()).
    The loop then stops accepting and closes the acceptor. Sessions in flight are not cancelled.
    With drain_on_shutdown the loop waits for them before returning; otherwise they are left to
    finish on their daemon threads, and may be cut off if the process exits.

    Fires the events in sockfwd.events through self.events.
    """

    # how often the accept loop checks for a stop request
    accept_poll_interval = 0.25
    # pause after an accept error, so a persistent error does not spin the loop
    accept_error_delay = 0.05

    def __init__(self, config: ForwardConfig, stop_event: threading.Event = None, events: EventSource = None,
                 connector=None):
        """
        :param config: the forwarder configuration. Validated here.
        :param stop_event: set to request shutdown. A new event is created if not given.
        :param events: the event source to fire forwarder events to
        :param connector: creates the target connections. Defaults to a TargetConnector for the config.
        """
        self.config = config.validate()
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.events = events if events is not None else EventSource()
        self.connector = connector if connector is not None else TargetConnector(
            config.connect_type, config.connect_addr, config.dial_timeout, report_errors=False)
        self.acceptor = None    # type: Acceptor
        self.state = ForwarderState.STARTING
        self.background_thread = None
        self._session_ids = itertools.count(1)
        self._sessions = {}
        self._sessions_lock = threading.Lock()

    @property
    def address(self):
        """ the address the forwarder listens on, with any OS-assigned port filled in """
        return self.acceptor.address if self.acceptor is not None else None

    @property
    def active_sessions(self):
        with self._sessions_lock:
            return len(self._sessions)

    def start(self):
        """
        Creates the acceptor. Calling this before run() lets the caller learn the bound address.
        :raises ListenError: the listener could not be created. Fatal.
        """
        if self.acceptor is not None:
            return
        config = self.config
        self.events.fire(ForwarderStartedEvent(config))
        self.acceptor = listen(config.listen_type, config.listen_addr)
        self.state = ForwarderState.LISTENING
        self.events.fire(ListeningEvent(Transport.parse(config.listen_type).value, self.acceptor.address))

    def run(self):
        """
        Accepts and dispatches connections until the stop event is set.
        :raises ListenError: the listener could not be created.
        """
        self.start()
        try:
            while not self.stop_event.is_set():
                self.state = ForwarderState.ACCEPTING
                self._accept_once()
        finally:
            self._drain()

    def serve_in_background(self):
        """ Starts the acceptor and runs the accept loop on a daemon thread. """
        self.start()
        if self.background_thread is None:
            t = threading.Thread(target=self.run, name='forwarder accept')
            t.daemon = True
            self.background_thread = t
            t.start()
        return self.background_thread

    def stop(self, timeout=None):
        """ Requests shutdown and waits for a background accept loop to finish. """
        self.stop_event.set()
        thread = self.background_thread
        self.background_thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout)

    def _accept_once(self):
        try:
            conduit = self.acceptor.accept(self.accept_poll_interval)
        except AcceptError as e:
            if self.stop_event.is_set():
                return
            self.events.fire(AcceptFailedEvent(e))
            self.stop_event.wait(self.accept_error_delay)
            return
        if conduit is None:
            return
        self.state = ForwarderState.DISPATCHING
        self._dispatch(conduit)

    def _dispatch(self, inbound: Conduit):
        session_id = next(self._session_ids)
        self.events.fire(ConnectionAcceptedEvent(session_id, inbound.peer))
        if self.config.fork:
            t = threading.Thread(target=self._session, args=(session_id, inbound),
                                 name='session %d' % session_id)
            t.daemon = True
            self._register(session_id, t)
            try:
                t.start()
            except RuntimeError as e:
                # no thread for the session, e.g. the process is at its thread limit
                self._unregister(session_id)
                inbound.close()
                self.events.fire(AcceptFailedEvent(AcceptError("session %d not started: %s" % (session_id, e))))
        else:
            self._register(session_id, threading.current_thread())
            self._session(session_id, inbound)

    def _register(self, session_id, thread):
        with self._sessions_lock:
            self._sessions[session_id] = thread

    def _unregister(self, session_id):
        with self._sessions_lock:
            self._sessions.pop(session_id, None)

    def _session(self, session_id, inbound: Conduit):
        """ dials the target and relays until the pairing is finished. Never raises. """
        outbound = None
        try:
            endpoint = self.connector.endpoint
            try:
                outbound = self.connector.connect()
            except DialError as e:
                inbound.close()
                self.events.fire(DialFailedEvent(session_id, endpoint, e))
                return
            self.events.fire(TargetConnectedEvent(session_id, endpoint))
            relay = Relay(inbound, outbound, self.config.buffer_size, self.config.full_duplex_drain,
                          name='session %d' % session_id)
            outcome = relay.run()
            self.events.fire(SessionClosedEvent(session_id, inbound.peer, outcome))
        except Exception:
            logger.exception("session %d failed" % session_id)
            inbound.close()
            if outbound is not None:
                outbound.close()
        finally:
            self._unregister(session_id)

    def _drain(self):
        self.state = ForwarderState.DRAINING
        if self.acceptor is not None:
            self.acceptor.close()
        with self._sessions_lock:
            sessions = [t for t in self._sessions.values() if t is not threading.current_thread()]
        self.events.fire(ShutdownEvent(len(sessions)))
        if self.config.drain_on_shutdown:
            for t in sessions:
                t.join()
        self.state = ForwarderState.STOPPED
