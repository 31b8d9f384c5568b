import errno
import logging
import os
import socket

from sockfwd.conduit.socket_conduit import SocketConduit
from sockfwd.connector.base import AcceptError, ConfigError, ListenError, ListenReason, Transport, \
    format_sockaddr, split_host_port, unix_supported

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 128


class Acceptor:
    """
    Owns one bound, listening socket. The acceptor is the only way new inbound conduits are obtained.
    """
    def __init__(self, transport: Transport, sock: socket.socket, path=None):
        """
        :param transport: the transport the socket listens on
        :param sock: the bound socket, already listening
        :param path: for unix sockets, the filesystem entry created by the bind. Removed on close.
        """
        self.transport = transport
        self.sock = sock
        self.path = path
        self._closed = False

    @property
    def address(self):
        """ the bound address, with any OS-assigned port filled in """
        if self.path is not None:
            return self.path
        return format_sockaddr(self.sock.getsockname())

    @property
    def closed(self):
        return self._closed

    def accept(self, timeout=None):
        """
        Waits for the next inbound connection.
        :param timeout: seconds to wait. None blocks until a connection arrives.
        :return: the accepted conduit, or None when the timeout elapsed first.
        :raises AcceptError: accepting failed, including when the acceptor has been closed
        """
        try:
            self.sock.settimeout(timeout)
            sock, addr = self.sock.accept()
        except socket.timeout:
            return None
        except OSError as e:
            raise AcceptError("accept on %s: %s" % (self.transport.value, e)) from e
        sock.settimeout(None)
        return SocketConduit(sock, peer=format_sockaddr(addr) if addr else None)

    def close(self):
        if self._closed:
            return
        self._closed = True
        self.sock.close()
        if self.path is not None:
            try:
                os.remove(self.path)
            except OSError as e:
                logger.debug("could not remove socket file %s: %s" % (self.path, e))


def listen(transport, address, backlog=DEFAULT_BACKLOG) -> Acceptor:
    """
    Creates the acceptor for a listen transport and address.
    :raises ListenError: the transport cannot be listened on, or binding failed
    """
    try:
        transport = Transport.parse(transport)
    except ConfigError as e:
        raise ListenError(ListenReason.UNSUPPORTED_TRANSPORT, str(e)) from e

    if transport is Transport.TCP:
        return _listen_tcp(address, backlog)
    if transport is Transport.UNIX and unix_supported():
        return _listen_unix(address, backlog)
    raise ListenError(ListenReason.UNSUPPORTED_TRANSPORT, "unsupported listen type: %s" % transport.value)


def _listen_tcp(address, backlog):
    try:
        host, port = split_host_port(address)
    except ConfigError as e:
        raise ListenError(ListenReason.INVALID_ADDRESS, str(e)) from e
    try:
        if not host and socket.has_dualstack_ipv6():
            sock = socket.create_server(('', port), family=socket.AF_INET6, backlog=backlog,
                                        dualstack_ipv6=True)
        elif not host:
            sock = socket.create_server(('', port), backlog=backlog)
        else:
            family, _, _, _, sockaddr = socket.getaddrinfo(
                host, port, 0, socket.SOCK_STREAM, 0, socket.AI_PASSIVE)[0]
            sock = socket.create_server(sockaddr, family=family, backlog=backlog)
    except OSError as e:
        raise _listen_error(address, e) from e
    return Acceptor(Transport.TCP, sock)


def remove_stale_socket(path):
    """
    Removes a filesystem entry left behind at path, usually by a previous instance that crashed.
    Failure is not fatal - the bind that follows reports any real conflict.
    """
    if not os.path.lexists(path):
        return False
    try:
        os.remove(path)
        logger.debug("removed stale socket file %s" % path)
        return True
    except OSError as e:
        logger.debug("could not remove stale socket file %s: %s" % (path, e))
        return False


def _listen_unix(path, backlog):
    remove_stale_socket(path)
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise _listen_error(path, e) from e
    return Acceptor(Transport.UNIX, sock, path)


def _listen_error(address, e: OSError):
    if e.errno == errno.EADDRINUSE:
        reason = ListenReason.ADDRESS_IN_USE
    elif e.errno in (errno.EACCES, errno.EPERM):
        reason = ListenReason.PERMISSION_DENIED
    elif isinstance(e, socket.gaierror) or e.errno in (errno.ENOENT, errno.ENAMETOOLONG, errno.EADDRNOTAVAIL):
        reason = ListenReason.INVALID_ADDRESS
    else:
        reason = ListenReason.BIND_FAILED
    return ListenError(reason, "failed to create listener on %s: %s" % (address, e))
