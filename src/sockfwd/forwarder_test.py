import os
import socket
import struct
import sys
import tempfile
import threading
import time
import unittest
from unittest.mock import Mock, patch

import timeout_decorator
from hamcrest import assert_that, is_, calling, raises, instance_of, has_length, greater_than_or_equal_to, \
    starts_with, has_item, is_not

from sockfwd.connector.base import AcceptError, ConfigError, DialError, DialReason, ListenError, ListenReason
from sockfwd.connector.socketconn import TargetConnector
from sockfwd.events import AcceptFailedEvent, ConnectionAcceptedEvent, DialFailedEvent, ForwarderStartedEvent, \
    ListeningEvent, SessionClosedEvent, ShutdownEvent, TargetConnectedEvent
from sockfwd.forwarder import ForwardConfig, Forwarder, ForwarderState
from sockfwd.support.testing import EchoServer, connect_tcp, free_port, read_all, read_exactly, tcp_server_socket, \
    unix_server_socket, wait_until


class ForwardConfigTest(unittest.TestCase):
    def test_defaults(self):
        config = ForwardConfig(listen_addr=':8080', connect_addr='/tmp/test.sock')
        assert_that(config.listen_type, is_('tcp'))
        assert_that(config.connect_type, is_('unix'))
        assert_that(config.fork, is_(True))
        assert_that(config.dial_timeout, is_(10.0))
        assert_that(config.full_duplex_drain, is_(False))
        assert_that(config.drain_on_shutdown, is_(False))
        assert_that(config.validate(), is_(config))

    def test_immutable(self):
        config = ForwardConfig(listen_addr=':8080', connect_addr='/tmp/test.sock')
        assert_that(calling(setattr).with_args(config, 'listen_addr', ':9090'), raises(AttributeError))

    def test_valid_unix_to_tcp(self):
        ForwardConfig('unix', '/tmp/listen.sock', 'tcp', 'localhost:9090').validate()

    def test_empty_listen_address(self):
        config = ForwardConfig('tcp', '', 'unix', '/tmp/test.sock')
        assert_that(calling(config.validate), raises(ConfigError, 'listen address'))

    def test_empty_connect_address(self):
        config = ForwardConfig('tcp', ':8080', 'unix', '')
        assert_that(calling(config.validate), raises(ConfigError, 'connect address'))

    def test_unsupported_listen_type(self):
        for listen_type in ('abstract', 'bogus'):
            config = ForwardConfig(listen_type, 'x', 'unix', '/tmp/test.sock')
            assert_that(calling(config.validate), raises(ConfigError))

    def test_connect_type_checked_on_dial(self):
        ForwardConfig('tcp', ':8080', 'bogus', 'x').validate()

    def test_invalid_numbers(self):
        base = ForwardConfig('tcp', ':8080', 'unix', '/tmp/test.sock')
        assert_that(calling(base._replace(dial_timeout=0).validate), raises(ConfigError))
        assert_that(calling(base._replace(buffer_size=0).validate), raises(ConfigError))


class ForwarderFixture(unittest.TestCase):

    def setUp(self):
        self.servers = []
        self.clients = []
        self.forwarders = []
        self.events = []

    def tearDown(self):
        for f in self.forwarders:
            f.stop(5)
        for c in self.clients:
            c.close()
        for s in self.servers:
            s.close()

    def echo_server(self):
        server = EchoServer(tcp_server_socket()).start()
        self.servers.append(server)
        return server

    def forwarder(self, connect_addr, connect_type='tcp', listen_addr='127.0.0.1:0', listen_type='tcp',
                  connector=None, **kwargs):
        config = ForwardConfig(listen_type, listen_addr, connect_type, connect_addr, **kwargs)
        sut = Forwarder(config, connector=connector)
        sut.accept_poll_interval = 0.05
        sut.events.add(self.events.append)
        self.forwarders.append(sut)
        sut.serve_in_background()
        return sut

    def client(self, address):
        sock = connect_tcp(address)
        self.clients.append(sock)
        return sock

    def events_of(self, event_type):
        return [e for e in self.events if isinstance(e, event_type)]

    def wait_for(self, event_type, count=1):
        assert_that(wait_until(lambda: len(self.events_of(event_type)) >= count),
                    is_(True), "waiting for %d %s" % (count, event_type.__name__))
        return self.events_of(event_type)


class ForwarderScenarioTest(ForwarderFixture):

    @timeout_decorator.timeout(20)
    def test_tcp_echo(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        client = self.client(sut.address)
        client.sendall(b'Hello, World!')
        assert_that(read_exactly(client, 13), is_(b'Hello, World!'))
        client.close()
        closed = self.wait_for(SessionClosedEvent)
        assert_that(closed[0].outcome.counts, is_((13, 13)))

    @timeout_decorator.timeout(20)
    def test_listen_any_address(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address, listen_addr=':0')
        port = sut.acceptor.sock.getsockname()[1]
        client = self.client('127.0.0.1:%d' % port)
        client.sendall(b'Hello, World!')
        assert_that(read_exactly(client, 13), is_(b'Hello, World!'))

    @timeout_decorator.timeout(20)
    def test_events(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        client = self.client(sut.address)
        client.sendall(b'ping')
        read_exactly(client, 4)
        client.close()
        self.wait_for(SessionClosedEvent)
        assert_that(self.events[0], is_(ForwarderStartedEvent(sut.config)))
        assert_that(self.events[1], is_(ListeningEvent('tcp', sut.address)))
        accepted = self.events_of(ConnectionAcceptedEvent)[0]
        assert_that(accepted, is_(ConnectionAcceptedEvent(1, '%s:%d' % client.getsockname())))
        assert_that(self.events_of(TargetConnectedEvent), is_([TargetConnectedEvent(1, 'tcp:' + echo.address)]))

    @timeout_decorator.timeout(20)
    def test_dial_failure_closes_inbound(self):
        sut = self.forwarder('127.0.0.1:%d' % free_port())
        client = self.client(sut.address)
        assert_that(read_all(client), is_(b''))
        failed = self.wait_for(DialFailedEvent)
        assert_that(failed[0].error.reason, is_(DialReason.REFUSED))
        assert_that(self.events_of(SessionClosedEvent), is_([]))
        assert_that(self.events_of(TargetConnectedEvent), is_([]))
        # the accept loop carries on
        second = self.client(sut.address)
        assert_that(read_all(second), is_(b''))
        self.wait_for(DialFailedEvent, 2)
        assert_that(self.events_of(ConnectionAcceptedEvent), has_length(2))
        assert_that(wait_until(lambda: sut.active_sessions == 0), is_(True))

    @timeout_decorator.timeout(20)
    def test_bogus_connect_type_fails_every_dial(self):
        sut = self.forwarder('anything', connect_type='bogus')
        with patch('sockfwd.connector.socketconn.socket') as sock_module:
            for n in range(1, 3):
                client = self.client(sut.address)
                assert_that(read_all(client), is_(b''))
                failed = self.wait_for(DialFailedEvent, n)
                assert_that(failed[-1].error.reason, is_(DialReason.UNSUPPORTED_TRANSPORT))
            sock_module.create_connection.assert_not_called()
            sock_module.socket.assert_not_called()

    @unittest.skipUnless(hasattr(socket, 'AF_UNIX'), 'unix sockets not available')
    @timeout_decorator.timeout(20)
    def test_unix_to_tcp(self):
        echo = self.echo_server()
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'listen.sock')
            sut = self.forwarder(echo.address, listen_type='unix', listen_addr=path)
            assert_that(sut.address, is_(path))
            client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self.clients.append(client)
            client.connect(path)
            client.sendall(b'over unix')
            assert_that(read_exactly(client, 9), is_(b'over unix'))
            accepted = self.wait_for(ConnectionAcceptedEvent)
            assert_that(accepted[0].peer, is_('unnamed'))

    @unittest.skipUnless(sys.platform.startswith('linux'), 'abstract sockets are Linux only')
    @timeout_decorator.timeout(20)
    def test_tcp_to_abstract(self):
        name = 'sockfwd-test-%d-webview' % os.getpid()
        server = EchoServer(unix_server_socket('\0' + name)).start()
        self.servers.append(server)
        sut = self.forwarder(name, connect_type='abstract')
        client = self.client(sut.address)
        client.sendall(b'abstract')
        assert_that(read_exactly(client, 8), is_(b'abstract'))
        assert_that(self.wait_for(TargetConnectedEvent)[0].endpoint, is_('abstract:' + name))


class ForwarderConcurrencyTest(ForwarderFixture):

    @timeout_decorator.timeout(20)
    def test_concurrent_sessions_overlap(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address, fork=True)
        clients = [self.client(sut.address) for _ in range(5)]
        for n, c in enumerate(clients):
            c.sendall(b'client %d' % n)
        for n, c in enumerate(clients):
            assert_that(read_exactly(c, 8), is_(b'client %d' % n))
        assert_that(echo.peak, is_(greater_than_or_equal_to(3)))
        assert_that(sut.active_sessions, is_(5))
        for c in clients:
            c.close()
        self.wait_for(SessionClosedEvent, 5)
        assert_that(wait_until(lambda: sut.active_sessions == 0), is_(True))

    @timeout_decorator.timeout(20)
    def test_serialized_sessions(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address, fork=False)
        first = self.client(sut.address)
        first.sendall(b'first')
        assert_that(read_exactly(first, 5), is_(b'first'))

        second = self.client(sut.address)
        second.sendall(b'second')
        time.sleep(0.3)
        # not accepted or dialed while the first session is running
        assert_that(self.events_of(ConnectionAcceptedEvent), has_length(1))
        assert_that(echo.accepted, is_(1))
        assert_that(sut.active_sessions, is_(1))

        first.close()
        assert_that(read_exactly(second, 6), is_(b'second'))
        assert_that(echo.accepted, is_(2))
        closed = self.wait_for(SessionClosedEvent)[0]
        accepted = self.events_of(ConnectionAcceptedEvent)[1]
        assert_that(self.events.index(closed) < self.events.index(accepted), is_(True))

    @timeout_decorator.timeout(20)
    def test_failing_session_does_not_affect_others(self):
        echo = self.echo_server()
        delegate = TargetConnector('tcp', echo.address)
        attempts = []

        def connect():
            attempts.append(len(attempts) + 1)
            if len(attempts) == 2:
                raise DialError(DialReason.REFUSED, 'refused')
            return delegate.connect()

        connector = Mock()
        connector.endpoint = delegate.endpoint
        connector.connect.side_effect = connect
        sut = self.forwarder(echo.address, connector=connector)

        healthy = self.client(sut.address)
        self.wait_for(TargetConnectedEvent)
        failing = self.client(sut.address)
        assert_that(read_all(failing), is_(b''))
        self.wait_for(DialFailedEvent)

        healthy.sendall(b'still here')
        assert_that(read_exactly(healthy, 10), is_(b'still here'))
        third = self.client(sut.address)
        third.sendall(b'third')
        assert_that(read_exactly(third, 5), is_(b'third'))

    @timeout_decorator.timeout(20)
    def test_copy_error_contained_to_session(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        doomed = self.client(sut.address)
        self.wait_for(TargetConnectedEvent)
        # reset the connection instead of closing it gracefully
        doomed.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack('ii', 1, 0))
        doomed.close()
        self.wait_for(SessionClosedEvent)
        other = self.client(sut.address)
        other.sendall(b'ok')
        assert_that(read_exactly(other, 2), is_(b'ok'))

    @timeout_decorator.timeout(20)
    def test_session_thread_failure_is_not_fatal(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        real_start = threading.Thread.start
        refused = []

        def start(thread):
            if thread.name.startswith('session') and not refused:
                refused.append(thread.name)
                raise RuntimeError("can't start new thread")
            return real_start(thread)

        with patch.object(threading.Thread, 'start', autospec=True, side_effect=start):
            rejected = self.client(sut.address)
            assert_that(read_all(rejected), is_(b''))
        failed = self.wait_for(AcceptFailedEvent)
        assert_that(str(failed[0].error), starts_with('session 1 not started'))
        assert_that(sut.active_sessions, is_(0))
        assert_that(echo.accepted, is_(0))

        client = self.client(sut.address)
        client.sendall(b'next')
        assert_that(read_exactly(client, 4), is_(b'next'))
        assert_that(sut.state, is_not(ForwarderState.STOPPED))

    @timeout_decorator.timeout(20)
    def test_unexpected_session_error_closes_both_connections(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        with patch('sockfwd.forwarder.Relay', side_effect=RuntimeError('no relay')), \
                patch('sockfwd.forwarder.logger') as logger:
            client = self.client(sut.address)
            assert_that(read_all(client), is_(b''))
            logger.exception.assert_called_once()
        assert_that(wait_until(lambda: echo.accepted == 1 and echo.active == 0), is_(True))
        assert_that(wait_until(lambda: sut.active_sessions == 0), is_(True))


class ForwarderShutdownTest(ForwarderFixture):

    @timeout_decorator.timeout(20)
    def test_stop_closes_acceptor(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        address = sut.address
        sut.stop(5)
        assert_that(sut.state, is_(ForwarderState.STOPPED))
        assert_that(sut.acceptor.closed, is_(True))
        assert_that(self.events_of(ShutdownEvent), is_([ShutdownEvent(0)]))
        assert_that(calling(connect_tcp).with_args(address, 1), raises(OSError))

    @timeout_decorator.timeout(20)
    def test_stop_leaves_sessions_running(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address)
        client = self.client(sut.address)
        self.wait_for(TargetConnectedEvent)
        sut.stop(5)
        assert_that(self.events_of(ShutdownEvent), is_([ShutdownEvent(1)]))
        client.sendall(b'after stop')
        assert_that(read_exactly(client, 10), is_(b'after stop'))

    @timeout_decorator.timeout(20)
    def test_drain_on_shutdown_waits_for_sessions(self):
        echo = self.echo_server()
        sut = self.forwarder(echo.address, drain_on_shutdown=True)
        client = self.client(sut.address)
        self.wait_for(TargetConnectedEvent)
        stopper = threading.Thread(target=sut.stop)
        stopper.start()
        time.sleep(0.3)
        assert_that(stopper.is_alive(), is_(True))
        assert_that(sut.state, is_(ForwarderState.DRAINING))
        client.close()
        stopper.join(5)
        assert_that(stopper.is_alive(), is_(False))
        assert_that(sut.state, is_(ForwarderState.STOPPED))

    def test_stop_event_from_caller(self):
        stop = threading.Event()
        stop.set()
        config = ForwardConfig('tcp', '127.0.0.1:0', 'tcp', '127.0.0.1:1')
        sut = Forwarder(config, stop)
        sut.run()
        assert_that(sut.state, is_(ForwarderState.STOPPED))
        assert_that(sut.acceptor.closed, is_(True))


class ForwarderStartTest(unittest.TestCase):

    def test_listen_error_is_fatal(self):
        occupied = tcp_server_socket()
        try:
            config = ForwardConfig('tcp', '127.0.0.1:%d' % occupied.getsockname()[1], 'tcp', '127.0.0.1:1')
            sut = Forwarder(config)
            try:
                sut.run()
                self.fail('expected ListenError')
            except ListenError as e:
                assert_that(e.reason, is_(ListenReason.ADDRESS_IN_USE))
            assert_that(sut.state, is_(ForwarderState.STARTING))
        finally:
            occupied.close()

    def test_invalid_config_rejected(self):
        config = ForwardConfig('tcp', '', 'tcp', '127.0.0.1:1')
        assert_that(calling(Forwarder).with_args(config), raises(ConfigError))

    def test_start_reports_address(self):
        sut = Forwarder(ForwardConfig('tcp', '127.0.0.1:0', 'unix', '/tmp/none.sock'))
        assert_that(sut.address, is_(None))
        sut.start()
        try:
            assert_that(sut.address, starts_with('127.0.0.1:'))
            assert_that(sut.state, is_(ForwarderState.LISTENING))
            assert_that(sut.connector, is_(instance_of(TargetConnector)))
        finally:
            sut.acceptor.close()

    def test_accept_error_is_not_fatal(self):
        events = []
        sut = Forwarder(ForwardConfig('tcp', '127.0.0.1:0', 'tcp', '127.0.0.1:1'))
        sut.events.add(events.append)
        sut.acceptor = Mock()
        sut.acceptor.accept.side_effect = [AcceptError('too many open files'), None]
        sut.accept_error_delay = 0
        sut._accept_once()
        sut._accept_once()
        assert_that([type(e).__name__ for e in events], has_item('AcceptFailedEvent'))
        assert_that(sut.acceptor.accept.call_count, is_(2))
