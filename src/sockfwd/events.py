"""
Events fired by the forwarder as connections come and go. The LoggingEventListener turns them into
log records; other listeners can be registered on the forwarder's event source.

The listener logs to the sockfwd.forwarder logger rather than this module's own, so the forwarder's
lifecycle lines are filtered and configured under one name whichever module fires them.
"""
import logging

from sockfwd.relay import DirectionStatus
from sockfwd.support.mixins import CommonEqualityMixin, StringerMixin

logger = logging.getLogger('sockfwd.forwarder')


class ForwarderEvent(CommonEqualityMixin, StringerMixin):
    """ base class for forwarder events. """


class ForwarderStartedEvent(ForwarderEvent):
    def __init__(self, config):
        self.config = config


class ListeningEvent(ForwarderEvent):
    """ The acceptor is bound and listening. """
    def __init__(self, transport, address):
        self.transport = transport
        self.address = address


class ConnectionAcceptedEvent(ForwarderEvent):
    def __init__(self, session_id, peer):
        self.session_id = session_id
        self.peer = peer


class AcceptFailedEvent(ForwarderEvent):
    def __init__(self, error):
        self.error = error


class TargetConnectedEvent(ForwarderEvent):
    """ The target was dialed. The session is now relaying. """
    def __init__(self, session_id, endpoint):
        self.session_id = session_id
        self.endpoint = endpoint


class DialFailedEvent(ForwarderEvent):
    """ The target could not be reached. The inbound connection has been closed. """
    def __init__(self, session_id, endpoint, error):
        self.session_id = session_id
        self.endpoint = endpoint
        self.error = error


class SessionClosedEvent(ForwarderEvent):
    """ Both connections of a session are closed. outcome is a RelayOutcome. """
    def __init__(self, session_id, peer, outcome):
        self.session_id = session_id
        self.peer = peer
        self.outcome = outcome


class ShutdownEvent(ForwarderEvent):
    def __init__(self, active_sessions):
        self.active_sessions = active_sessions


class LoggingEventListener:
    """ Logs each forwarder event. Register with forwarder.events.add(LoggingEventListener()). """

    def __init__(self, log=logger):
        self.logger = log
        self._handlers = {
            ForwarderStartedEvent: self._started,
            ListeningEvent: self._listening,
            ConnectionAcceptedEvent: self._accepted,
            AcceptFailedEvent: self._accept_failed,
            TargetConnectedEvent: self._connected,
            DialFailedEvent: self._dial_failed,
            SessionClosedEvent: self._closed,
            ShutdownEvent: self._shutdown,
        }

    def __call__(self, event):
        handler = self._handlers.get(type(event))
        if handler:
            handler(event)
        else:
            self.logger.debug("event %s" % event)

    def _started(self, e):
        c = e.config
        self.logger.info("Starting socket forwarder: %s:%s -> %s:%s" %
                         (c.listen_type, c.listen_addr, c.connect_type, c.connect_addr))

    def _listening(self, e):
        self.logger.info("Listening on %s:%s" % (e.transport, e.address))

    def _accepted(self, e):
        self.logger.info("[%d] New connection from %s" % (e.session_id, e.peer))

    def _accept_failed(self, e):
        self.logger.warning("Accept error: %s" % e.error)

    def _connected(self, e):
        self.logger.info("[%d] Connected to target %s" % (e.session_id, e.endpoint))

    def _dial_failed(self, e):
        self.logger.warning("[%d] Failed to connect to target %s: %s" % (e.session_id, e.endpoint, e.error))

    def _closed(self, e):
        for direction in (e.outcome.upstream, e.outcome.downstream):
            method = self.logger.warning if direction.status is DirectionStatus.FAILED else self.logger.info
            method("[%d] %s" % (e.session_id, direction))
        self.logger.info("[%d] Connection from %s closed" % (e.session_id, e.peer))

    def _shutdown(self, e):
        self.logger.info("Shutting down... (%d sessions active)" % e.active_sessions)
